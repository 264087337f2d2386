from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from receipt_engine.core.errors import BackendCallFailed, BackendTimeout

logger = logging.getLogger(__name__)


class BackendId(str, Enum):
    MOCK = "mock"
    TESSERACT = "tesseract"
    PADDLEOCR = "paddleocr"
    AWS_TEXTRACT = "aws_textract"
    OCR_SPACE = "ocr_space"
    GOOGLE_VISION = "google_vision"
    AZURE_COGNITIVE = "azure_cognitive"
    OPENAI_VISION = "openai_vision"


IMAGE_CONTENT_TYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/tiff", "image/bmp", "image/gif", "image/webp"}
)
PDF_CONTENT_TYPES = frozenset({"application/pdf"})


def content_hash(buffer: bytes) -> str:
    """SHA-256 hex digest of the raw input bytes."""
    return hashlib.sha256(buffer).hexdigest()


@dataclass(frozen=True)
class FieldValue:
    value: str
    confidence: float  # 0.0 to 1.0

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "confidence": self.confidence}


@dataclass(frozen=True)
class LineItem:
    description: str
    amount: str

    def to_dict(self) -> dict[str, str]:
        return {"description": self.description, "amount": self.amount}


@dataclass(frozen=True)
class RecognitionOptions:
    language: str | None = None
    requested_fields: tuple[str, ...] = ()
    content_type: str = "image/jpeg"


@dataclass(frozen=True)
class RawRecognition:
    """What an adapter hands back before timing and hashing are attached."""
    text: str
    confidence: float
    fields: dict[str, FieldValue] | None = None


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    confidence: float  # 0.0 to 1.0
    backend_id: str
    elapsed_ms: int
    content_hash: str
    fields: Mapping[str, FieldValue] | None = None
    error_message: str | None = None
    line_items: tuple[LineItem, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Results are shared through the cache; callers get a read-only view
        if self.fields is not None:
            object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "line_items", tuple(self.line_items))

    @property
    def ok(self) -> bool:
        return self.error_message is None

    @classmethod
    def failed(cls, message: str, *, content_hash: str = "", backend_id: str = "") -> RecognitionResult:
        return cls(
            text="",
            confidence=0.0,
            backend_id=backend_id,
            elapsed_ms=0,
            content_hash=content_hash,
            error_message=message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "backend_id": self.backend_id,
            "elapsed_ms": self.elapsed_ms,
            "content_hash": self.content_hash,
            "fields": {k: v.to_dict() for k, v in self.fields.items()} if self.fields is not None else None,
            "line_items": [item.to_dict() for item in self.line_items],
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class BackendDescriptor:
    """Static configuration for one backend, held for the process lifetime."""
    backend_id: BackendId
    language: str | None = None
    endpoint: str | None = None
    api_key: str | None = None
    api_secret: str | None = None
    region: str | None = None
    timeout_seconds: float = 30.0
    extras: Mapping[str, Any] = field(default_factory=dict)


class BackendAdapter:
    """Uniform contract over one recognition service.

    Subclasses implement ``_recognize``; ``recognize`` applies the timeout,
    measures elapsed time, hashes the input and maps every failure into
    ``BackendCallFailed`` so callers never see a half-built result.
    """

    supported_content_types: frozenset[str] = IMAGE_CONTENT_TYPES

    def __init__(self, descriptor: BackendDescriptor) -> None:
        self.descriptor = descriptor

    @property
    def backend_id(self) -> str:
        return self.descriptor.backend_id.value

    async def recognize(self, buffer: bytes, options: RecognitionOptions) -> RecognitionResult:
        if options.content_type not in self.supported_content_types:
            raise BackendCallFailed(self.backend_id, f"unsupported content type {options.content_type!r}")

        t0 = time.monotonic()
        try:
            raw = await asyncio.wait_for(
                self._recognize(buffer, options), timeout=self.descriptor.timeout_seconds
            )
        except BackendCallFailed:
            raise
        except asyncio.TimeoutError as exc:
            raise BackendTimeout(
                self.backend_id, f"no response within {self.descriptor.timeout_seconds}s"
            ) from exc
        except Exception as exc:
            raise BackendCallFailed(self.backend_id, str(exc) or type(exc).__name__) from exc

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "backend_recognized",
            extra={
                "backend": self.backend_id,
                "elapsed_ms": elapsed_ms,
                "confidence": round(raw.confidence, 4),
                "chars": len(raw.text),
            },
        )
        return RecognitionResult(
            text=raw.text,
            confidence=max(0.0, min(1.0, raw.confidence)),
            backend_id=self.backend_id,
            elapsed_ms=elapsed_ms,
            content_hash=content_hash(buffer),
            fields=raw.fields or None,
        )

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
