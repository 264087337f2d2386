"""Content-hash keyed cache of recognition results with per-entry expiry."""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from receipt_engine.ocr.base import RecognitionResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


@dataclass(frozen=True)
class CacheEntry:
    key: str
    result: RecognitionResult
    expires_at: float


class ResultCache(Protocol):
    def get(self, key: str) -> RecognitionResult | None: ...

    def put(self, key: str, result: RecognitionResult, ttl: float | None = None) -> None: ...

    def sweep(self) -> int: ...

    def clear(self) -> None: ...


def cache_key(content_hash: str, *, language: str | None, requested_fields: Iterable[str], preprocess: bool) -> str:
    """Cache key for one document under one set of effective options.

    The backend that ends up serving the request is deliberately not part
    of the key: a fallback backend's result answers the same question.
    """
    options = json.dumps(
        {"language": language, "fields": sorted(set(requested_fields)), "preprocess": preprocess},
        sort_keys=True,
    )
    digest = hashlib.sha256(options.encode("utf-8")).hexdigest()[:16]
    return f"{content_hash}:{digest}"


class InMemoryResultCache:
    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> RecognitionResult | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.result

    def put(self, key: str, result: RecognitionResult, ttl: float | None = None) -> None:
        expires_at = self._clock() + (self._default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = CacheEntry(key=key, result=result, expires_at=expires_at)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("cache_swept", extra={"evicted": len(expired)})
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


async def run_periodic_sweep(cache: ResultCache, interval_seconds: float, stop: asyncio.Event) -> None:
    """Sweep expired entries every ``interval_seconds`` until ``stop`` is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            cache.sweep()
