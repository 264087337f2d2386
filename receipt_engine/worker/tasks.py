"""Celery tasks that own a batch from hand-off to terminal status.

Batch jobs run on the engine bound to this process. The engine's clients
and connection pool belong to the event loop it was started on, so every
job is scheduled onto that loop. A worker process with no bound engine
starts one on a private loop the first time a job arrives.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Coroutine

from receipt_engine.worker.celery_app import celery_app

if TYPE_CHECKING:
    from receipt_engine.pipeline.batch import BatchProgress
    from receipt_engine.pipeline.pipeline import ExtractionEngine

logger = logging.getLogger(__name__)

_binding: tuple[ExtractionEngine, asyncio.AbstractEventLoop] | None = None
_binding_lock = threading.Lock()


def bind_engine(engine: ExtractionEngine, loop: asyncio.AbstractEventLoop) -> None:
    """Run this process's batch jobs on ``engine`` inside ``loop``."""
    global _binding
    _binding = (engine, loop)


def unbind_engine(engine: ExtractionEngine) -> None:
    global _binding
    if _binding is not None and _binding[0] is engine:
        _binding = None


def bound_engine() -> ExtractionEngine | None:
    return _binding[0] if _binding is not None else None


def _engine_binding() -> tuple[ExtractionEngine, asyncio.AbstractEventLoop]:
    with _binding_lock:
        if _binding is None or _binding[1].is_closed():
            from receipt_engine.main import start_engine

            loop = asyncio.new_event_loop()
            loop.run_until_complete(start_engine())  # start() binds the engine to this loop
        return _binding


def _run_on_loop(loop: asyncio.AbstractEventLoop, coro: Coroutine[Any, Any, Any]) -> Any:
    if not loop.is_running():
        return loop.run_until_complete(coro)
    try:
        current = asyncio.get_running_loop()
    except RuntimeError:
        current = None
    if current is loop:
        coro.close()
        raise RuntimeError("Batch jobs must be dispatched off the engine's event loop thread")
    return asyncio.run_coroutine_threadsafe(coro, loop).result()


async def _run_batch(
    engine: ExtractionEngine,
    task_id: str,
    documents: list[dict[str, Any]],
    options: dict[str, Any] | None,
) -> BatchProgress:
    from receipt_engine.pipeline.pipeline import BatchDocument, ProcessingOptions

    return await engine.run_batch(
        task_id,
        [BatchDocument.from_payload(doc) for doc in documents],
        ProcessingOptions.from_payload(options) if options else None,
    )


@celery_app.task(name="run_batch", bind=True, ignore_result=True)
def run_batch_task(
    self,
    task_id: str,
    documents: list[dict[str, Any]],
    options: dict[str, Any] | None = None,
) -> None:
    celery_task_id = getattr(self.request, "id", None)
    start = time.monotonic()
    logger.info(
        "batch_task_started",
        extra={"task_id": task_id, "celery_task_id": celery_task_id, "documents": len(documents)},
    )
    try:
        engine, loop = _engine_binding()
        progress = _run_on_loop(loop, _run_batch(engine, task_id, documents, options))
    except Exception:
        logger.exception(
            "batch_task_failed",
            extra={
                "task_id": task_id,
                "celery_task_id": celery_task_id,
                "duration_ms": int((time.monotonic() - start) * 1000),
            },
        )
        raise
    logger.info(
        "batch_task_finished",
        extra={
            "task_id": task_id,
            "celery_task_id": celery_task_id,
            "processed": progress.processed,
            "cancelled": progress.cancelled,
            "duration_ms": int((time.monotonic() - start) * 1000),
        },
    )
