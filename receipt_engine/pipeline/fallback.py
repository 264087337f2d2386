from __future__ import annotations

import logging
from typing import Iterable, Mapping

from receipt_engine.core.errors import AllBackendsExhausted, BackendUnavailable
from receipt_engine.ocr.base import BackendAdapter, BackendId, RecognitionOptions, RecognitionResult

logger = logging.getLogger(__name__)


def _resolve(value: str | BackendId) -> BackendId | None:
    try:
        return BackendId(value)
    except ValueError:
        return None


class FallbackController:
    """Try the primary backend, then the configured order, until one succeeds.

    A backend missing from the configured set is skipped and does not count
    as an attempt. Each backend is tried at most once per call.
    """

    def __init__(
        self,
        order: Iterable[str | BackendId],
        enabled: bool = True,
        max_attempts: int | None = None,
    ) -> None:
        self.order: list[BackendId] = []
        for item in order:
            backend_id = _resolve(item)
            if backend_id is None:
                logger.warning("fallback_order_unknown_backend", extra={"backend": str(item)})
            elif backend_id not in self.order:
                self.order.append(backend_id)
        self.enabled = enabled
        self.max_attempts = max_attempts

    def candidates(self, primary: BackendId) -> list[BackendId]:
        if not self.enabled:
            return [primary]
        return [primary] + [b for b in self.order if b != primary]

    async def run(
        self,
        backends: Mapping[BackendId, BackendAdapter],
        buffer: bytes,
        options: RecognitionOptions,
        primary: str | BackendId,
    ) -> RecognitionResult:
        primary_id = _resolve(primary)
        if primary_id is None:
            raise BackendUnavailable(f"Unknown OCR backend {primary!r}")

        attempted: list[str] = []
        last_error: Exception | None = None

        for backend_id in self.candidates(primary_id):
            if self.max_attempts is not None and len(attempted) >= self.max_attempts:
                break
            adapter = backends.get(backend_id)
            if adapter is None:
                logger.info("fallback_backend_skipped", extra={"backend": backend_id.value})
                continue

            if attempted:
                logger.info(
                    "fallback_attempt",
                    extra={"backend": backend_id.value, "attempt": len(attempted) + 1, "previous": attempted[-1]},
                )
            attempted.append(backend_id.value)
            try:
                return await adapter.recognize(buffer, options)
            except Exception as exc:
                last_error = exc
                logger.warning("backend_call_failed", extra={"backend": backend_id.value, "error": str(exc)})

        if last_error is None:
            raise BackendUnavailable(
                f"No configured OCR backend available (primary {primary_id.value!r})"
            )
        raise AllBackendsExhausted(last_error, attempted) from last_error
