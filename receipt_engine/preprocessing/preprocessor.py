"""Best-effort image normalisation before recognition.

Every step is independent: a failing step is logged and skipped, and any
problem decoding or re-encoding the image hands back the original bytes.
``transform`` never raises.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Callable, Literal

from PIL import Image, ImageEnhance, ImageFilter, ImageOps

from receipt_engine.core.config import Settings
from receipt_engine.core.errors import PreprocessingDegraded
from receipt_engine.ocr.base import IMAGE_CONTENT_TYPES

logger = logging.getLogger(__name__)

FitMode = Literal["cover", "contain", "fill", "inside", "outside"]


@dataclass(frozen=True)
class PreprocessingOptions:
    enabled: bool = True
    grayscale: bool = False
    contrast: float | None = None
    brightness: float | None = None
    sharpen: bool = False
    resize_width: int | None = None
    resize_height: int | None = None
    resize_fit: FitMode = "inside"

    @classmethod
    def from_settings(cls, cfg: Settings) -> PreprocessingOptions:
        return cls(
            enabled=cfg.preprocessing_enabled,
            grayscale=cfg.preprocessing_grayscale,
            contrast=cfg.preprocessing_contrast,
            brightness=cfg.preprocessing_brightness,
            sharpen=cfg.preprocessing_sharpen,
            resize_width=cfg.preprocessing_resize_width,
            resize_height=cfg.preprocessing_resize_height,
            resize_fit=cfg.preprocessing_resize_fit,
        )

    @property
    def has_transformations(self) -> bool:
        return bool(
            self.grayscale
            or self.contrast is not None
            or self.brightness is not None
            or self.sharpen
            or self.resize_width
            or self.resize_height
        )


class ImagePreprocessor:
    def __init__(self, options: PreprocessingOptions | None = None) -> None:
        self.options = options or PreprocessingOptions()

    def transform(self, buffer: bytes, content_type: str = "image/jpeg") -> bytes:
        opts = self.options
        if not opts.enabled or not opts.has_transformations or content_type not in IMAGE_CONTENT_TYPES:
            return buffer

        try:
            img = Image.open(io.BytesIO(buffer))
            img.load()
        except Exception as exc:
            logger.warning("preprocessing_decode_failed", extra={"error": str(exc)})
            return buffer

        image_format = img.format or "PNG"
        steps: list[tuple[str, Callable[[Image.Image], Image.Image]]] = []
        if opts.resize_width or opts.resize_height:
            steps.append(("resize", self._resize))
        if opts.grayscale:
            steps.append(("grayscale", ImageOps.grayscale))
        if opts.contrast is not None:
            steps.append(("contrast", self._contrast))
        if opts.brightness is not None:
            steps.append(("brightness", self._brightness))
        if opts.sharpen:
            steps.append(("sharpen", lambda im: im.filter(ImageFilter.SHARPEN)))

        applied: list[str] = []
        for name, step in steps:
            try:
                img = step(img)
                applied.append(name)
            except Exception as exc:
                logger.warning("preprocessing_step_degraded", extra={"step": name, "error": str(exc)})

        if not applied:
            return buffer

        try:
            return _encode(img, image_format)
        except Exception as exc:
            logger.warning("preprocessing_encode_failed", extra={"format": image_format, "error": str(exc)})
            return buffer

    # ------------------------------------------------------------------ #
    #  Steps                                                              #
    # ------------------------------------------------------------------ #

    def _contrast(self, img: Image.Image) -> Image.Image:
        factor = self.options.contrast
        if factor is None or factor < 0:
            raise PreprocessingDegraded("contrast", f"invalid factor {factor!r}")
        return ImageEnhance.Contrast(_enhanceable(img)).enhance(factor)

    def _brightness(self, img: Image.Image) -> Image.Image:
        factor = 1 + (self.options.brightness or 0.0)
        if factor < 0:
            raise PreprocessingDegraded("brightness", f"adjustment {self.options.brightness!r} below -1")
        return ImageEnhance.Brightness(_enhanceable(img)).enhance(factor)

    def _resize(self, img: Image.Image) -> Image.Image:
        width, height = self.options.resize_width, self.options.resize_height
        if (width is not None and width <= 0) or (height is not None and height <= 0):
            raise PreprocessingDegraded("resize", f"invalid size {width}x{height}")

        src_w, src_h = img.size
        if not width or not height:
            # One dimension given: keep the aspect ratio, fit mode is moot
            if width:
                size = (width, max(1, round(src_h * width / src_w)))
            else:
                size = (max(1, round(src_w * height / src_h)), height)
            return img.resize(size)

        fit = self.options.resize_fit
        if fit == "fill":
            return img.resize((width, height))
        if fit == "cover":
            return ImageOps.fit(img, (width, height))
        if fit == "contain":
            return ImageOps.pad(img, (width, height), color="white")
        if fit == "inside":
            return ImageOps.contain(img, (width, height))
        if fit == "outside":
            ratio = max(width / src_w, height / src_h)
            return img.resize((max(1, round(src_w * ratio)), max(1, round(src_h * ratio))))
        raise PreprocessingDegraded("resize", f"unknown fit mode {fit!r}")


def _enhanceable(img: Image.Image) -> Image.Image:
    if img.mode not in {"RGB", "L", "RGBA"}:
        return img.convert("RGB")
    return img


def _encode(img: Image.Image, image_format: str) -> bytes:
    if image_format.upper() in {"JPEG", "JPG"} and img.mode not in {"RGB", "L"}:
        img = img.convert("RGB")
    out = io.BytesIO()
    img.save(out, format=image_format)
    return out.getvalue()
