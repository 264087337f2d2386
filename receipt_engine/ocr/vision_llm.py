"""Generative vision model backend (OpenAI chat completions, JSON mode).

The model reads the image and answers with a JSON object holding both the
transcription and the receipt fields, so this adapter is the one that
returns ``fields`` natively for every request.

Config:
    OPENAI_API_KEY=...
    VISION_MODEL=gpt-4o-mini
"""
from __future__ import annotations

import base64
import json
import logging
import re

from tenacity import retry, stop_after_attempt, wait_exponential

from receipt_engine.core.errors import BackendCallFailed
from receipt_engine.extraction.extractor import ODOMETER_FIELD
from receipt_engine.ocr.base import (
    BackendAdapter,
    BackendDescriptor,
    FieldValue,
    RawRecognition,
    RecognitionOptions,
)

logger = logging.getLogger(__name__)

# Used when the model omits its own per-field scores
DEFAULT_MODEL_CONFIDENCE = 0.7


_RECEIPT_PROMPT = """\
You are a precise receipt data extraction assistant.
Read the attached receipt image and return ONE JSON object with these keys
(use null when a value cannot be found):
- text: string, the full transcription of the receipt, one printed line per line
- vendor: string, the business name
- date: string, the transaction date (YYYY-MM-DD when possible)
- total: string, the final total as a plain decimal, e.g. "12.00"
- tax: string, the tax amount as a plain decimal
- receipt_number: string, the receipt / invoice / order number
- currency: string, 3-letter ISO code
- confidence: object mapping each of the keys above to a 0.0-1.0 score

Respond ONLY with valid JSON. No explanation, no markdown fences.
"""

_ODOMETER_PROMPT = """\
This is an image of a car's odometer. Extract ONLY the numerical reading
displayed. Ignore any other text or symbols (like 'km', 'miles', 'trip').
Return ONLY a JSON object with a single key "reading" holding the number as a
string, e.g. {"reading": "123456.7"}.
"""

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_NUMBER_RE = re.compile(r"[0-9]+(?:[.,][0-9]+)?")


class VisionLLMEngine(BackendAdapter):
    supported_content_types = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"})

    def __init__(self, descriptor: BackendDescriptor, client=None) -> None:
        super().__init__(descriptor)
        self._model = str(descriptor.extras.get("model", "gpt-4o-mini"))
        self._client = client

    def _get_client(self):
        if self._client is None:
            try:
                from openai import AsyncOpenAI  # type: ignore[import]
            except ModuleNotFoundError as exc:
                raise RuntimeError(
                    "openai package is not installed. Run: pip install openai"
                ) from exc
            self._client = AsyncOpenAI(api_key=self.descriptor.api_key, timeout=self.descriptor.timeout_seconds)
        return self._client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10), reraise=True)
    async def _call(self, prompt: str, data_url: str) -> str:
        response = await self._get_client().chat.completions.create(
            model=self._model,
            temperature=0.0,
            max_tokens=2000,
            response_format={"type": "json_object"},
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
        )
        return response.choices[0].message.content or ""

    async def _recognize(self, buffer: bytes, options: RecognitionOptions) -> RawRecognition:
        data_url = f"data:{options.content_type};base64,{base64.b64encode(buffer).decode('ascii')}"
        if ODOMETER_FIELD in options.requested_fields:
            content = await self._call(_ODOMETER_PROMPT, data_url)
            return self._parse_odometer(content)
        content = await self._call(_RECEIPT_PROMPT, data_url)
        return self._parse_receipt(content, options)

    def _parse_receipt(self, content: str, options: RecognitionOptions) -> RawRecognition:
        data = _parse_json_object(content)
        if data is None:
            logger.error("vision_llm_json_parse_error", extra={"raw": content[:200]})
            raise BackendCallFailed(self.backend_id, "model response was not a JSON object")

        confidence_map = data.get("confidence") if isinstance(data.get("confidence"), dict) else {}
        scores = [float(v) for v in confidence_map.values() if isinstance(v, (int, float))]
        overall = sum(scores) / len(scores) if scores else DEFAULT_MODEL_CONFIDENCE

        fields: dict[str, FieldValue] = {}
        for name in options.requested_fields:
            value = data.get(name)
            if value is None or isinstance(value, (dict, list)) or str(value).strip() == "":
                continue
            score = confidence_map.get(name)
            fields[name] = FieldValue(
                value=str(value).strip(),
                confidence=float(score) if isinstance(score, (int, float)) else DEFAULT_MODEL_CONFIDENCE,
            )

        text = data.get("text") if isinstance(data.get("text"), str) else content
        logger.info("vision_llm_complete", extra={"model": self._model, "fields": len(fields)})
        return RawRecognition(text=text.strip(), confidence=overall, fields=fields or None)

    def _parse_odometer(self, content: str) -> RawRecognition:
        data = _parse_json_object(content) or {}
        reading = data.get("reading")
        confidence = DEFAULT_MODEL_CONFIDENCE
        if reading is None:
            # Model ignored the JSON instruction; take the first number it said
            match = _NUMBER_RE.search(content)
            reading = match.group(0).replace(",", ".") if match else None
            confidence = 0.5
        if reading is None:
            raise BackendCallFailed(self.backend_id, "Could not extract any numerical reading.")

        fields = {ODOMETER_FIELD: FieldValue(value=str(reading).strip(), confidence=confidence)}
        return RawRecognition(text=content.strip(), confidence=confidence, fields=fields)


def _parse_json_object(content: str) -> dict | None:
    cleaned = _FENCE_RE.sub(r"\1", content).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
