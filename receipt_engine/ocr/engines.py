"""Local OCR engines (Tesseract, PaddleOCR) and the AWS Textract engine.

All three wrap blocking libraries; the blocking call runs in the default
executor so one shared instance can serve many concurrent batch workers.
"""
from __future__ import annotations

import asyncio
import io
import logging

from receipt_engine.ocr.base import (
    IMAGE_CONTENT_TYPES,
    PDF_CONTENT_TYPES,
    BackendAdapter,
    BackendDescriptor,
    FieldValue,
    RawRecognition,
    RecognitionOptions,
)

logger = logging.getLogger(__name__)

# Tesseract does not report a page-level score; used when no word carries one.
TESSERACT_DEFAULT_CONFIDENCE = 0.8


def _load_image(image_bytes: bytes):
    from PIL import Image

    img = Image.open(io.BytesIO(image_bytes))
    if img.mode not in {"RGB", "L"}:
        img = img.convert("RGB")
    return img


# ---------------------------------------------------------------------------
# TesseractEngine: local Tesseract binary via pytesseract
# ---------------------------------------------------------------------------

class TesseractEngine(BackendAdapter):
    """OCR engine backed by the Tesseract binary.

    Config (via .env):
        TESSERACT_CMD=/usr/bin/tesseract   # optional, defaults to PATH lookup
        TESSERACT_DATA_PATH=...            # optional tessdata dir
        TESSERACT_LANG=eng
    """

    def __init__(self, descriptor: BackendDescriptor) -> None:
        super().__init__(descriptor)
        self._cmd = descriptor.extras.get("exec_path")
        self._data_path = descriptor.extras.get("data_path")

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        loop = asyncio.get_running_loop()
        language = options.language or self.descriptor.language or "eng"
        return await loop.run_in_executor(None, self._run_tesseract, buffer, language)

    def _run_tesseract(self, image_bytes: bytes, language: str) -> RawRecognition:
        import pytesseract

        if self._cmd:
            pytesseract.pytesseract.tesseract_cmd = self._cmd
        config = f'--tessdata-dir "{self._data_path}"' if self._data_path else ""

        data = pytesseract.image_to_data(
            _load_image(image_bytes), lang=language, config=config, output_type=pytesseract.Output.DICT
        )
        text, confidences = _tesseract_lines(data)

        confidence = (
            sum(confidences) / len(confidences) if confidences else TESSERACT_DEFAULT_CONFIDENCE
        )
        logger.info(
            "tesseract_complete",
            extra={"words": len(confidences), "avg_confidence": round(confidence, 4)},
        )
        return RawRecognition(text=text.strip(), confidence=confidence)


def _tesseract_lines(data: dict) -> tuple[str, list[float]]:
    """Rebuild the page text from ``image_to_data`` words, one line per Tesseract line."""
    words = data.get("text") or []
    n = len(words)
    keys = zip(data.get("block_num") or [0] * n, data.get("par_num") or [0] * n, data.get("line_num") or [0] * n)
    lines: list[list[str]] = []
    confidences: list[float] = []
    current = None
    for word, key, conf in zip(words, keys, data.get("conf") or [-1] * n):
        word = str(word).strip()
        if not word:
            continue
        if key != current:
            lines.append([])
            current = key
        lines[-1].append(word)
        try:
            score = float(conf)
        except (TypeError, ValueError):
            continue
        if score >= 0:
            confidences.append(score / 100.0)
    return "\n".join(" ".join(line) for line in lines), confidences


# ---------------------------------------------------------------------------
# LocalOCREngine: PaddleOCR
# ---------------------------------------------------------------------------

class LocalOCREngine(BackendAdapter):
    """OCR engine backed by PaddleOCR (runs 100% locally, no cloud calls).

    Install dependency:
        pip install paddlepaddle paddleocr

    Config (via .env):
        PADDLE_LANG=en      # language code: en | ch | fr | es | etc.
        PADDLE_USE_GPU=false
    """

    def __init__(self, descriptor: BackendDescriptor) -> None:
        super().__init__(descriptor)
        self._use_gpu = bool(descriptor.extras.get("use_gpu", False))
        self._ocr = None   # lazy-init to avoid import cost at startup

    def _get_ocr(self):
        if self._ocr is None:
            try:
                from paddleocr import PaddleOCR  # type: ignore[import]
            except ModuleNotFoundError as exc:
                raise RuntimeError(
                    "PaddleOCR is not installed. Run: pip install paddlepaddle paddleocr"
                ) from exc
            self._ocr = PaddleOCR(
                use_angle_cls=True,
                lang=self.descriptor.language or "en",
                use_gpu=self._use_gpu,
                show_log=False,
            )
        return self._ocr

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._run_paddle, buffer)

    def _run_paddle(self, image_bytes: bytes) -> RawRecognition:
        import numpy as np

        img_array = np.array(_load_image(image_bytes).convert("RGB"))
        result = self._get_ocr().ocr(img_array, cls=True)

        lines: list[str] = []
        confidences: list[float] = []

        if result and result[0]:
            for line in result[0]:
                # Each line: [bounding_box, [text, confidence]]
                text, conf = line[1]
                lines.append(text)
                confidences.append(float(conf))

        avg_confidence = sum(confidences) / len(confidences) if confidences else 0.0

        logger.info(
            "paddleocr_complete",
            extra={"lines": len(lines), "avg_confidence": round(avg_confidence, 4)},
        )
        return RawRecognition(text="\n".join(lines), confidence=avg_confidence)


# ---------------------------------------------------------------------------
# CloudOCREngine: AWS Textract
# ---------------------------------------------------------------------------

# Textract AnalyzeExpense summary field types -> our field names
_TEXTRACT_FIELD_MAP = {
    "VENDOR_NAME": "vendor",
    "INVOICE_RECEIPT_DATE": "date",
    "TOTAL": "total",
    "TAX": "tax",
    "INVOICE_RECEIPT_ID": "receipt_number",
}


class CloudOCREngine(BackendAdapter):
    """OCR engine backed by AWS Textract.

    Uses AnalyzeExpense by default, which returns receipt summary fields
    natively; set ``analyze_expense=False`` in the descriptor extras to fall
    back to plain DetectDocumentText.

    Config (via .env):
        AWS_TEXTRACT_ENABLED=true
        AWS_REGION=us-east-1
        AWS_ACCESS_KEY_ID=...      (or use IAM role)
        AWS_SECRET_ACCESS_KEY=...
    """

    supported_content_types = (IMAGE_CONTENT_TYPES - {"image/bmp", "image/gif", "image/webp"}) | PDF_CONTENT_TYPES

    def __init__(self, descriptor: BackendDescriptor, client=None) -> None:
        super().__init__(descriptor)
        self._analyze_expense = bool(descriptor.extras.get("analyze_expense", True))
        self._client = client

    def _get_client(self):
        if self._client is None:
            import boto3

            kwargs: dict = {"region_name": self.descriptor.region or "us-east-1"}
            if self.descriptor.api_key:
                kwargs["aws_access_key_id"] = self.descriptor.api_key
                kwargs["aws_secret_access_key"] = self.descriptor.api_secret
            self._client = boto3.client("textract", **kwargs)
        return self._client

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        loop = asyncio.get_running_loop()
        if self._analyze_expense:
            return await loop.run_in_executor(None, self._call_analyze_expense, buffer)
        return await loop.run_in_executor(None, self._call_detect_text, buffer)

    def _call_detect_text(self, image_bytes: bytes) -> RawRecognition:
        response = self._get_client().detect_document_text(Document={"Bytes": image_bytes})
        text, confidence = _collect_lines(response.get("Blocks", []))

        logger.info("textract_complete", extra={"mode": "detect_text", "avg_confidence": round(confidence, 4)})
        return RawRecognition(text=text, confidence=confidence)

    def _call_analyze_expense(self, image_bytes: bytes) -> RawRecognition:
        response = self._get_client().analyze_expense(Document={"Bytes": image_bytes})

        blocks: list[dict] = []
        fields: dict[str, FieldValue] = {}
        for doc in response.get("ExpenseDocuments", []):
            blocks.extend(doc.get("Blocks", []))
            for summary in doc.get("SummaryFields", []):
                name = _TEXTRACT_FIELD_MAP.get(summary.get("Type", {}).get("Text", ""))
                value = summary.get("ValueDetection", {})
                if not name or not value.get("Text"):
                    continue
                candidate = FieldValue(
                    value=value["Text"].strip(),
                    confidence=float(value.get("Confidence", 0)) / 100.0,
                )
                # Keep the most confident detection when a type repeats
                if name not in fields or candidate.confidence > fields[name].confidence:
                    fields[name] = candidate

        text, confidence = _collect_lines(blocks)
        logger.info(
            "textract_complete",
            extra={"mode": "analyze_expense", "fields": len(fields), "avg_confidence": round(confidence, 4)},
        )
        return RawRecognition(text=text, confidence=confidence, fields=fields or None)


def _collect_lines(blocks: list[dict]) -> tuple[str, float]:
    lines: list[str] = []
    confidences: list[float] = []
    for block in blocks:
        if block.get("BlockType") == "LINE":
            lines.append(block.get("Text", ""))
            confidences.append(float(block.get("Confidence", 0)) / 100.0)
    avg_confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return "\n".join(lines), avg_confidence
