"""Test doubles shared across test modules."""
from __future__ import annotations

import asyncio

from receipt_engine.ocr.base import (
    BackendAdapter,
    BackendDescriptor,
    BackendId,
    FieldValue,
    RawRecognition,
    RecognitionOptions,
)


class ScriptedBackend(BackendAdapter):
    """Backend whose answer (or failure) is fixed per test; records every call."""

    def __init__(
        self,
        backend_id: BackendId,
        text: str = "",
        confidence: float = 0.9,
        fields: dict[str, FieldValue] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(BackendDescriptor(backend_id, timeout_seconds=5.0))
        self.text = text
        self.confidence = confidence
        self.fields = fields
        self.error = error
        self.delay = delay
        self.calls: list[bytes] = []

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        self.calls.append(buffer)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return RawRecognition(text=self.text, confidence=self.confidence, fields=self.fields)
