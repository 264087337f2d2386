"""Batch orchestration: fan documents out in waves, report progress, finish once.

Per-document failures are folded into the result list as error-carrying
results and never fail the batch. Only an unreachable task store at the
start or at the terminal update escapes as ``TaskStoreUnreachable``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from receipt_engine.core.errors import TaskStoreUnreachable
from receipt_engine.ocr.base import RecognitionResult
from receipt_engine.storage.task_store import TaskStatus, TaskStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Batch cancelled"


class BatchMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass
class BatchProgress:
    task_id: str
    total: int
    processed: int = 0
    unit_results: list[RecognitionResult | None] = field(default_factory=list)
    cancelled: bool = False

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 100
        # round half up
        return (200 * self.processed + self.total) // (2 * self.total)

    def progress_payload(self) -> dict[str, Any]:
        return {"processed": self.processed, "total": self.total, "progress": self.percentage}

    def payload(self) -> dict[str, Any]:
        return {
            **self.progress_payload(),
            "results": [r.to_dict() if r is not None else None for r in self.unit_results],
        }


class BatchOrchestrator:
    def __init__(
        self,
        process: Callable[[Any], Awaitable[RecognitionResult]],
        task_store: TaskStore,
        mode: BatchMode = BatchMode.PARALLEL,
        max_concurrency: int = 3,
        update_timeout: float = 10.0,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._process = process
        self._task_store = task_store
        self.mode = mode
        self.max_concurrency = max_concurrency
        self.update_timeout = update_timeout

    @property
    def wave_size(self) -> int:
        return self.max_concurrency if self.mode is BatchMode.PARALLEL else 1

    async def run(
        self,
        task_id: str,
        documents: Sequence[Any],
        cancel_event: asyncio.Event | None = None,
    ) -> BatchProgress:
        total = len(documents)
        progress = BatchProgress(task_id=task_id, total=total, unit_results=[None] * total)

        try:
            await self._update(task_id, TaskStatus.PROCESSING, progress.progress_payload())
        except Exception as exc:
            logger.error("task_store_update_failed", extra={"task_id": task_id, "stage": "start", "error": str(exc)})
            raise TaskStoreUnreachable(f"Could not mark task {task_id} as processing: {exc}") from exc

        logger.info(
            "batch_started",
            extra={"task_id": task_id, "total": total, "mode": self.mode.value, "wave_size": self.wave_size},
        )

        for start in range(0, total, self.wave_size):
            if cancel_event is not None and cancel_event.is_set():
                progress.cancelled = True
                break

            indices = range(start, min(start + self.wave_size, total))
            results = await asyncio.gather(*(self._process_one(task_id, i, documents[i]) for i in indices))

            if cancel_event is not None and cancel_event.is_set():
                progress.cancelled = True
                break

            for i, result in zip(indices, results):
                progress.unit_results[i] = result
            progress.processed = indices[-1] + 1
            logger.info(
                "batch_wave_complete",
                extra={
                    "task_id": task_id,
                    "processed": progress.processed,
                    "total": total,
                    "failed": sum(1 for r in results if not r.ok),
                },
            )
            await self._report_progress(progress)

        if progress.cancelled:
            return await self._finish_cancelled(progress)
        return await self._finish_completed(progress)

    async def _process_one(self, task_id: str, index: int, document: Any) -> RecognitionResult:
        try:
            return await self._process(document)
        except Exception as exc:
            logger.warning(
                "batch_document_failed",
                extra={"task_id": task_id, "index": index, "error": str(exc)},
            )
            return RecognitionResult.failed(str(exc) or type(exc).__name__)

    async def _update(
        self,
        task_id: str,
        status: TaskStatus,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        await asyncio.wait_for(
            self._task_store.update_task_status(task_id, status, result=result, error_message=error_message),
            timeout=self.update_timeout,
        )

    async def _report_progress(self, progress: BatchProgress) -> None:
        try:
            await self._update(progress.task_id, TaskStatus.PROCESSING, progress.progress_payload())
        except Exception as exc:
            logger.warning(
                "task_store_update_failed",
                extra={"task_id": progress.task_id, "stage": "progress", "error": str(exc)},
            )

    async def _finish_cancelled(self, progress: BatchProgress) -> BatchProgress:
        progress.unit_results = [
            r if r is not None else RecognitionResult.failed(CANCELLED_MESSAGE) for r in progress.unit_results
        ]
        progress.processed = progress.total
        logger.info("batch_cancelled", extra={"task_id": progress.task_id, "total": progress.total})
        try:
            await self._update(
                progress.task_id, TaskStatus.FAILED, progress.payload(), error_message=CANCELLED_MESSAGE
            )
        except Exception as exc:
            logger.error(
                "task_store_update_failed",
                extra={"task_id": progress.task_id, "stage": "cancelled", "error": str(exc)},
            )
            raise TaskStoreUnreachable(
                f"Could not record cancellation of task {progress.task_id}: {exc}", progress=progress
            ) from exc
        return progress

    async def _finish_completed(self, progress: BatchProgress) -> BatchProgress:
        progress.processed = progress.total
        try:
            await self._update(progress.task_id, TaskStatus.COMPLETED, progress.payload())
        except Exception as exc:
            logger.error(
                "task_store_update_failed",
                extra={"task_id": progress.task_id, "stage": "completed", "error": str(exc)},
            )
            try:
                await self._update(
                    progress.task_id,
                    TaskStatus.FAILED,
                    progress.payload(),
                    error_message=f"Could not record batch completion: {exc}",
                )
            except Exception as inner:
                logger.error(
                    "task_store_update_failed",
                    extra={"task_id": progress.task_id, "stage": "failed", "error": str(inner)},
                )
            raise TaskStoreUnreachable(
                f"Could not mark task {progress.task_id} as completed: {exc}", progress=progress
            ) from exc

        logger.info(
            "batch_completed",
            extra={
                "task_id": progress.task_id,
                "total": progress.total,
                "failed": sum(1 for r in progress.unit_results if r is not None and not r.ok),
            },
        )
        return progress
