from __future__ import annotations

import logging

from receipt_engine.core.config import Settings, settings as default_settings
from receipt_engine.ocr.base import BackendAdapter, BackendDescriptor, BackendId
from receipt_engine.ocr.cloud import AzureReadEngine, GoogleVisionEngine, OcrSpaceEngine
from receipt_engine.ocr.engines import CloudOCREngine, LocalOCREngine, TesseractEngine
from receipt_engine.ocr.mock_ocr import MockOCREngine
from receipt_engine.ocr.vision_llm import VisionLLMEngine

logger = logging.getLogger(__name__)

# Adding a backend = new BackendId member + one entry here
_REGISTRY: dict[BackendId, type[BackendAdapter]] = {
    BackendId.MOCK: MockOCREngine,
    BackendId.TESSERACT: TesseractEngine,
    BackendId.PADDLEOCR: LocalOCREngine,
    BackendId.AWS_TEXTRACT: CloudOCREngine,
    BackendId.OCR_SPACE: OcrSpaceEngine,
    BackendId.GOOGLE_VISION: GoogleVisionEngine,
    BackendId.AZURE_COGNITIVE: AzureReadEngine,
    BackendId.OPENAI_VISION: VisionLLMEngine,
}


def parse_backend_id(value: str | BackendId) -> BackendId:
    try:
        return BackendId(value)
    except ValueError:
        raise ValueError(f"Unknown OCR backend {value!r}") from None


def descriptors_from_settings(cfg: Settings) -> dict[BackendId, BackendDescriptor]:
    """Descriptors for every backend the settings make usable.

    Local engines are always described; cloud services only when their
    credentials are present.
    """
    timeout = cfg.backend_timeout_seconds
    descriptors: dict[BackendId, BackendDescriptor] = {
        BackendId.MOCK: BackendDescriptor(BackendId.MOCK, timeout_seconds=timeout),
        BackendId.TESSERACT: BackendDescriptor(
            BackendId.TESSERACT,
            language=cfg.tesseract_lang,
            timeout_seconds=timeout,
            extras={"exec_path": cfg.tesseract_cmd, "data_path": cfg.tesseract_data_path},
        ),
        BackendId.PADDLEOCR: BackendDescriptor(
            BackendId.PADDLEOCR,
            language=cfg.paddle_lang,
            timeout_seconds=timeout,
            extras={"use_gpu": cfg.paddle_use_gpu},
        ),
    }

    if cfg.aws_textract_enabled:
        descriptors[BackendId.AWS_TEXTRACT] = BackendDescriptor(
            BackendId.AWS_TEXTRACT,
            region=cfg.aws_region,
            api_key=cfg.aws_access_key_id,
            api_secret=cfg.aws_secret_access_key,
            timeout_seconds=timeout,
        )

    if cfg.ocr_space_api_key:
        descriptors[BackendId.OCR_SPACE] = BackendDescriptor(
            BackendId.OCR_SPACE,
            api_key=cfg.ocr_space_api_key,
            endpoint=cfg.ocr_space_endpoint,
            language=cfg.ocr_space_language,
            timeout_seconds=timeout,
            extras={"overlay_required": cfg.ocr_space_overlay_required},
        )

    if cfg.google_vision_api_key:
        descriptors[BackendId.GOOGLE_VISION] = BackendDescriptor(
            BackendId.GOOGLE_VISION,
            api_key=cfg.google_vision_api_key,
            timeout_seconds=timeout,
            extras={"project_id": cfg.google_vision_project_id},
        )

    if cfg.azure_cognitive_api_key and cfg.azure_cognitive_endpoint:
        descriptors[BackendId.AZURE_COGNITIVE] = BackendDescriptor(
            BackendId.AZURE_COGNITIVE,
            api_key=cfg.azure_cognitive_api_key,
            endpoint=cfg.azure_cognitive_endpoint,
            language=cfg.azure_cognitive_language,
            timeout_seconds=timeout,
            extras={
                "poll_max_attempts": cfg.azure_poll_max_attempts,
                "poll_interval_seconds": cfg.azure_poll_interval_seconds,
            },
        )

    if cfg.openai_api_key:
        descriptors[BackendId.OPENAI_VISION] = BackendDescriptor(
            BackendId.OPENAI_VISION,
            api_key=cfg.openai_api_key,
            timeout_seconds=timeout,
            extras={"model": cfg.vision_model},
        )

    return descriptors


def create_backend(descriptor: BackendDescriptor) -> BackendAdapter:
    return _REGISTRY[descriptor.backend_id](descriptor)


def build_backends(cfg: Settings | None = None) -> dict[BackendId, BackendAdapter]:
    """Instantiate every configured backend once, for the process lifetime."""
    cfg = cfg or default_settings
    backends = {backend_id: create_backend(d) for backend_id, d in descriptors_from_settings(cfg).items()}
    logger.info("backends_configured", extra={"backends": sorted(b.value for b in backends)})
    return backends


def get_backend(backend: str | BackendId | None = None, cfg: Settings | None = None) -> BackendAdapter:
    """Return one configured backend instance.

    Raises ValueError for ids outside the registry and for known backends
    whose credentials are missing.
    """
    cfg = cfg or default_settings
    backend_id = parse_backend_id(backend or cfg.default_backend)
    descriptor = descriptors_from_settings(cfg).get(backend_id)
    if descriptor is None:
        raise ValueError(f"OCR backend {backend_id.value!r} is not configured")
    return create_backend(descriptor)
