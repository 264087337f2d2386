"""Image preprocessing tests: Pillow-generated images, no fixtures on disk."""
from __future__ import annotations

import io

import pytest
from PIL import Image

from receipt_engine.preprocessing.preprocessor import ImagePreprocessor, PreprocessingOptions


def _image_bytes(size=(200, 100), color=(200, 30, 30), fmt: str = "PNG") -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format=fmt)
    return out.getvalue()


def _open(buffer: bytes) -> Image.Image:
    return Image.open(io.BytesIO(buffer))


# ---------------------------------------------------------------------------
# Pass-through cases
# ---------------------------------------------------------------------------

def test_disabled_returns_original_buffer() -> None:
    buffer = _image_bytes()
    pre = ImagePreprocessor(PreprocessingOptions(enabled=False, grayscale=True))
    assert pre.transform(buffer, "image/png") is buffer


def test_no_transformations_returns_original_buffer() -> None:
    buffer = _image_bytes()
    assert ImagePreprocessor(PreprocessingOptions()).transform(buffer, "image/png") is buffer


def test_non_image_content_type_is_untouched() -> None:
    pdf = b"%PDF-1.4 fake"
    pre = ImagePreprocessor(PreprocessingOptions(grayscale=True))
    assert pre.transform(pdf, "application/pdf") is pdf


def test_undecodable_image_returns_original() -> None:
    garbage = b"definitely not an image"
    pre = ImagePreprocessor(PreprocessingOptions(grayscale=True))
    assert pre.transform(garbage, "image/jpeg") is garbage


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def test_grayscale_keeps_format() -> None:
    out = ImagePreprocessor(PreprocessingOptions(grayscale=True)).transform(_image_bytes(), "image/png")
    img = _open(out)
    assert img.mode == "L"
    assert img.format == "PNG"


def test_jpeg_roundtrip_after_enhancements() -> None:
    opts = PreprocessingOptions(contrast=1.5, brightness=0.2, sharpen=True)
    out = ImagePreprocessor(opts).transform(_image_bytes(fmt="JPEG"), "image/jpeg")
    assert _open(out).format == "JPEG"


@pytest.mark.parametrize(
    "fit, expected",
    [
        ("fill", (100, 100)),
        ("cover", (100, 100)),
        ("contain", (100, 100)),
        ("inside", (100, 50)),
        ("outside", (200, 100)),
    ],
)
def test_resize_fit_modes(fit: str, expected: tuple[int, int]) -> None:
    opts = PreprocessingOptions(resize_width=100, resize_height=100, resize_fit=fit)
    out = ImagePreprocessor(opts).transform(_image_bytes(size=(200, 100)), "image/png")
    assert _open(out).size == expected


def test_resize_single_dimension_keeps_aspect_ratio() -> None:
    opts = PreprocessingOptions(resize_width=50)
    out = ImagePreprocessor(opts).transform(_image_bytes(size=(200, 100)), "image/png")
    assert _open(out).size == (50, 25)


def test_failing_step_is_skipped_and_others_apply(caplog) -> None:
    opts = PreprocessingOptions(contrast=-1.0, grayscale=True)
    with caplog.at_level("WARNING"):
        out = ImagePreprocessor(opts).transform(_image_bytes(), "image/png")
    assert _open(out).mode == "L"
    assert any(r.getMessage() == "preprocessing_step_degraded" for r in caplog.records)


def test_only_failing_steps_returns_original() -> None:
    buffer = _image_bytes()
    opts = PreprocessingOptions(resize_width=-5)
    assert ImagePreprocessor(opts).transform(buffer, "image/png") is buffer
