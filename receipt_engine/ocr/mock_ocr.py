from __future__ import annotations

from receipt_engine.ocr.base import (
    IMAGE_CONTENT_TYPES,
    PDF_CONTENT_TYPES,
    BackendAdapter,
    RawRecognition,
    RecognitionOptions,
)

MOCK_RECEIPT_TEXT = (
    "ACME COFFEE ROASTERS\n"
    "123 Main Street\n"
    "Receipt #: R-20240115-001\n"
    "Date: 2024-01-15\n"
    "\n"
    "Latte 4.50\n"
    "Blueberry Muffin 3.25\n"
    "Subtotal 7.75\n"
    "Tax 0.62\n"
    "Total USD 8.37\n"
)


class MockOCREngine(BackendAdapter):
    supported_content_types = IMAGE_CONTENT_TYPES | PDF_CONTENT_TYPES

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        # Synthetic receipt for development/testing
        return RawRecognition(text=MOCK_RECEIPT_TEXT, confidence=0.85)
