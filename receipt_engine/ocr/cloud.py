"""HTTP recognition services: OCR.space, Google Cloud Vision, Azure Read.

Each engine owns one lazily-created ``httpx.AsyncClient`` shared by every
caller; a client can be injected (tests use ``httpx.MockTransport``).
"""
from __future__ import annotations

import base64
import logging

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, retry_if_result, stop_after_attempt, wait_fixed

from receipt_engine.core.errors import BackendCallFailed, BackendTimeout
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


class _HttpEngine(BackendAdapter):
    def __init__(self, descriptor: BackendDescriptor, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(descriptor)
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.descriptor.timeout_seconds, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# OCR.space
# ---------------------------------------------------------------------------

class OcrSpaceEngine(_HttpEngine):
    """OCR.space parse/image API.

    Config (via .env):
        OCR_SPACE_API_KEY=...
        OCR_SPACE_ENDPOINT=https://api.ocr.space/parse/image
        OCR_SPACE_LANGUAGE=eng
    """

    supported_content_types = IMAGE_CONTENT_TYPES | PDF_CONTENT_TYPES

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        form = {
            "apikey": self.descriptor.api_key or "",
            "language": options.language or self.descriptor.language or "eng",
            "isOverlayRequired": str(bool(self.descriptor.extras.get("overlay_required", False))).lower(),
        }
        filename = "document.pdf" if options.content_type in PDF_CONTENT_TYPES else "image.jpg"
        if options.content_type in PDF_CONTENT_TYPES:
            form["filetype"] = "PDF"

        response = await self._get_client().post(
            self.descriptor.endpoint or "https://api.ocr.space/parse/image",
            data=form,
            files={"file": (filename, buffer, options.content_type)},
        )
        response.raise_for_status()
        body = response.json()

        if body.get("IsErroredOnProcessing"):
            raise BackendCallFailed(self.backend_id, _ocr_space_error(body))

        parsed_text = "\n".join(r.get("ParsedText", "") for r in body.get("ParsedResults") or [])
        # OCR.space reports no confidence; exit code 1 means every page parsed
        confidence = 0.9 if body.get("OCRExitCode") == 1 else 0.5
        return RawRecognition(text=parsed_text.strip(), confidence=confidence)


def _ocr_space_error(body: dict) -> str:
    message = body.get("ErrorMessage")
    if isinstance(message, list):
        message = "; ".join(str(m) for m in message)
    if not message:
        results = body.get("ParsedResults") or [{}]
        message = results[0].get("ErrorMessage") or results[0].get("ErrorDetails")
    return str(message or "OCR processing failed")


# ---------------------------------------------------------------------------
# Google Cloud Vision
# ---------------------------------------------------------------------------

GOOGLE_VISION_URL = "https://vision.googleapis.com/v1/images:annotate"


class GoogleVisionEngine(_HttpEngine):
    """Google Cloud Vision DOCUMENT_TEXT_DETECTION over the REST API.

    Config (via .env):
        GOOGLE_VISION_API_KEY=...
        GOOGLE_VISION_PROJECT_ID=...
    """

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        language = options.language or self.descriptor.language
        request_body = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(buffer).decode("ascii")},
                    "features": [{"type": "DOCUMENT_TEXT_DETECTION", "maxResults": 1}],
                    "imageContext": {"languageHints": [language] if language else []},
                }
            ]
        }
        response = await self._get_client().post(
            self.descriptor.endpoint or GOOGLE_VISION_URL,
            params={"key": self.descriptor.api_key or ""},
            json=request_body,
        )
        response.raise_for_status()
        responses = response.json().get("responses") or [{}]
        first = responses[0]

        if first.get("error"):
            raise BackendCallFailed(
                self.backend_id, f"Google Vision API error: {first['error'].get('message', 'unknown')}"
            )

        annotation = first.get("fullTextAnnotation") or {}
        page_confidences = [
            float(page["confidence"]) for page in annotation.get("pages", []) if "confidence" in page
        ]
        # No overall score in the response; pages carry one for document detection
        confidence = sum(page_confidences) / len(page_confidences) if page_confidences else 0.9
        return RawRecognition(text=(annotation.get("text") or "").strip(), confidence=confidence)


# ---------------------------------------------------------------------------
# Azure Computer Vision Read (asynchronous job API)
# ---------------------------------------------------------------------------

_AZURE_PENDING = {"notStarted", "running"}

# Keywords in Azure key/value keys -> our field names
_AZURE_KEY_MAP = (
    ("vendor", ("vendor", "store", "merchant")),
    ("date", ("date", "time")),
    ("total", ("total", "amount", "sum")),
    ("tax", ("tax", "vat", "gst")),
    ("receipt_number", ("receipt", "order", "invoice")),
)


class AzureReadEngine(_HttpEngine):
    """Azure Computer Vision Read API.

    Submits the image, then polls the operation URL a bounded number of times
    with a fixed delay; exceeding the bound raises ``BackendTimeout``.

    Config (via .env):
        AZURE_COGNITIVE_ENDPOINT=https://<resource>.cognitiveservices.azure.com
        AZURE_COGNITIVE_API_KEY=...
        AZURE_POLL_MAX_ATTEMPTS=10
        AZURE_POLL_INTERVAL_SECONDS=1.0
    """

    supported_content_types = IMAGE_CONTENT_TYPES | PDF_CONTENT_TYPES

    def __init__(self, descriptor: BackendDescriptor, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(descriptor, client)
        self._poll_max_attempts = int(descriptor.extras.get("poll_max_attempts", 10))
        self._poll_interval = float(descriptor.extras.get("poll_interval_seconds", 1.0))

    @property
    def _headers(self) -> dict[str, str]:
        return {"Ocp-Apim-Subscription-Key": self.descriptor.api_key or ""}

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        endpoint = (self.descriptor.endpoint or "").rstrip("/")
        params = {}
        language = options.language or self.descriptor.language
        if language:
            params["language"] = language

        response = await self._get_client().post(
            f"{endpoint}/vision/v3.2/read/analyze",
            params=params,
            content=buffer,
            headers={**self._headers, "Content-Type": "application/octet-stream"},
        )
        response.raise_for_status()
        operation_location = response.headers.get("operation-location")
        if not operation_location:
            raise BackendCallFailed(self.backend_id, "Operation location not found in response headers")

        body = await self._poll(operation_location)
        return self._parse(body, options)

    async def _poll(self, operation_location: str) -> dict:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._poll_max_attempts),
            wait=wait_fixed(self._poll_interval),
            retry=(
                retry_if_result(lambda body: body.get("status") in _AZURE_PENDING)
                | retry_if_exception_type(httpx.TransportError)
            ),
        )
        try:
            body = await retrying(self._fetch_operation, operation_location)
        except RetryError as exc:
            if exc.last_attempt.failed:
                raise BackendCallFailed(self.backend_id, str(exc.last_attempt.exception())) from exc
            raise BackendTimeout(
                self.backend_id, f"operation still running after {self._poll_max_attempts} polls"
            ) from exc

        if body.get("error"):
            raise BackendCallFailed(self.backend_id, f"Azure error: {body['error'].get('message', 'unknown')}")
        if body.get("status") != "succeeded":
            raise BackendCallFailed(self.backend_id, f"Azure operation {body.get('status', 'failed')}")
        return body

    async def _fetch_operation(self, operation_location: str) -> dict:
        response = await self._get_client().get(operation_location, headers=self._headers)
        response.raise_for_status()
        return response.json()

    def _parse(self, body: dict, options: RecognitionOptions) -> RawRecognition:
        analyze = body.get("analyzeResult") or {}
        lines: list[str] = []
        word_confidences: list[float] = []
        for read_result in analyze.get("readResults", []):
            for line in read_result.get("lines", []):
                lines.append(line.get("text", ""))
                word_confidences.extend(float(w.get("confidence", 0)) for w in line.get("words", []))

        confidence = sum(word_confidences) / len(word_confidences) if word_confidences else 0.5

        fields: dict[str, FieldValue] = {}
        wanted = set(options.requested_fields)
        for page in analyze.get("pageResults", []):
            for pair in page.get("keyValuePairs", []):
                key = (pair.get("key", {}).get("text") or "").lower()
                value = pair.get("value", {})
                if not value.get("text"):
                    continue
                for name, keywords in _AZURE_KEY_MAP:
                    if name in wanted and name not in fields and any(k in key for k in keywords):
                        fields[name] = FieldValue(
                            value=value["text"].strip(), confidence=float(value.get("confidence", confidence))
                        )
                        break

        logger.info(
            "azure_read_complete",
            extra={"lines": len(lines), "fields": len(fields), "avg_confidence": round(confidence, 4)},
        )
        return RawRecognition(text="\n".join(lines), confidence=confidence, fields=fields or None)
