"""Result cache tests: expiry driven by an injected clock."""
from __future__ import annotations

import asyncio

import pytest

from receipt_engine.cache.result_cache import InMemoryResultCache, cache_key, run_periodic_sweep
from receipt_engine.ocr.base import RecognitionResult


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _result(text: str = "ok") -> RecognitionResult:
    return RecognitionResult(text=text, confidence=0.9, backend_id="mock", elapsed_ms=3, content_hash="h")


# ---------------------------------------------------------------------------
# cache_key
# ---------------------------------------------------------------------------

def test_cache_key_is_stable_for_field_order() -> None:
    a = cache_key("h", language="en", requested_fields=["total", "vendor"], preprocess=True)
    b = cache_key("h", language="en", requested_fields=["vendor", "total"], preprocess=True)
    assert a == b
    assert a.startswith("h:")


def test_cache_key_varies_with_effective_options() -> None:
    base = cache_key("h", language=None, requested_fields=["total"], preprocess=False)
    assert base != cache_key("h", language="de", requested_fields=["total"], preprocess=False)
    assert base != cache_key("h", language=None, requested_fields=["tax"], preprocess=False)
    assert base != cache_key("h", language=None, requested_fields=["total"], preprocess=True)
    assert base != cache_key("other", language=None, requested_fields=["total"], preprocess=False)


# ---------------------------------------------------------------------------
# InMemoryResultCache
# ---------------------------------------------------------------------------

def test_get_returns_stored_result_before_expiry() -> None:
    clock = FakeClock()
    cache = InMemoryResultCache(default_ttl=60, clock=clock)
    result = _result()
    cache.put("k", result)
    clock.now += 59
    assert cache.get("k") is result


def test_get_purges_expired_entry() -> None:
    clock = FakeClock()
    cache = InMemoryResultCache(default_ttl=60, clock=clock)
    cache.put("k", _result())
    clock.now += 60
    assert cache.get("k") is None
    assert len(cache) == 0


def test_put_with_explicit_ttl() -> None:
    clock = FakeClock()
    cache = InMemoryResultCache(default_ttl=60, clock=clock)
    cache.put("short", _result(), ttl=5)
    clock.now += 10
    assert cache.get("short") is None


def test_missing_key_returns_none() -> None:
    assert InMemoryResultCache().get("nope") is None


def test_sweep_removes_only_expired_entries() -> None:
    clock = FakeClock()
    cache = InMemoryResultCache(default_ttl=60, clock=clock)
    cache.put("old", _result("old"), ttl=10)
    cache.put("new", _result("new"), ttl=100)
    clock.now += 20
    assert cache.sweep() == 1
    assert len(cache) == 1
    assert cache.get("new") is not None


def test_clear_empties_cache() -> None:
    cache = InMemoryResultCache()
    cache.put("a", _result())
    cache.clear()
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_periodic_sweep_runs_until_stopped() -> None:
    clock = FakeClock()
    cache = InMemoryResultCache(default_ttl=1, clock=clock)
    cache.put("k", _result())
    clock.now += 5

    stop = asyncio.Event()
    task = asyncio.create_task(run_periodic_sweep(cache, 0.01, stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert len(cache) == 0
