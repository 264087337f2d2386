"""Durable status of background tasks (batch uploads).

The batch orchestrator only needs ``update_task_status``; ``create_task`` and
``get_task`` serve the engine facade and callers polling for results.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receipt_engine.db.models import BackgroundTask

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskRecord:
    id: str
    kind: str
    status: TaskStatus
    result: dict[str, Any] | None = None
    error_message: str | None = None
    cancel_requested: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass(frozen=True)
class TaskUpdate:
    task_id: str
    status: TaskStatus
    result: dict[str, Any] | None = None
    error_message: str | None = None


class TaskStore(Protocol):
    async def create_task(self, kind: str) -> str: ...

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None: ...

    async def get_task(self, task_id: str) -> TaskRecord | None: ...

    async def request_cancel(self, task_id: str) -> bool: ...

    async def is_cancel_requested(self, task_id: str) -> bool: ...


class InMemoryTaskStore:
    """Process-local task store; keeps every update in ``updates``."""

    def __init__(self) -> None:
        self._tasks: dict[str, TaskRecord] = {}
        self.updates: list[TaskUpdate] = []

    async def create_task(self, kind: str) -> str:
        task_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        self._tasks[task_id] = TaskRecord(
            id=task_id, kind=kind, status=TaskStatus.PENDING, created_at=now, updated_at=now
        )
        return task_id

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} not found")
        status = TaskStatus(status)
        task.status = status
        if result is not None:
            task.result = result
        task.error_message = error_message
        task.updated_at = datetime.now(timezone.utc)
        self.updates.append(TaskUpdate(task_id, status, result, error_message))

    async def get_task(self, task_id: str) -> TaskRecord | None:
        return self._tasks.get(task_id)

    async def request_cancel(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.terminal:
            return False
        task.cancel_requested = True
        return True

    async def is_cancel_requested(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and task.cancel_requested


class SqlTaskStore:
    """Task store over the ``background_tasks`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_task(self, kind: str) -> str:
        task = BackgroundTask(id=uuid.uuid4(), kind=kind, status=TaskStatus.PENDING.value)
        async with self._session_factory() as session:
            session.add(task)
            await session.commit()
        logger.info("task_created", extra={"task_id": str(task.id), "kind": kind})
        return str(task.id)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            task = await session.get(BackgroundTask, uuid.UUID(task_id))
            if task is None:
                raise KeyError(f"Task {task_id} not found")
            task.status = TaskStatus(status).value
            if result is not None:
                task.result = result
            task.error_message = error_message
            await session.commit()

    async def get_task(self, task_id: str) -> TaskRecord | None:
        async with self._session_factory() as session:
            task = await session.get(BackgroundTask, uuid.UUID(task_id))
            if task is None:
                return None
            return TaskRecord(
                id=str(task.id),
                kind=task.kind,
                status=TaskStatus(task.status),
                result=task.result,
                error_message=task.error_message,
                cancel_requested=bool(task.cancel_requested),
                created_at=task.created_at,
                updated_at=task.updated_at,
            )

    async def request_cancel(self, task_id: str) -> bool:
        key = _parse_id(task_id)
        if key is None:
            return False
        async with self._session_factory() as session:
            task = await session.get(BackgroundTask, key)
            if task is None or task.status in (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value):
                return False
            task.cancel_requested = True
            await session.commit()
        return True

    async def is_cancel_requested(self, task_id: str) -> bool:
        key = _parse_id(task_id)
        if key is None:
            return False
        async with self._session_factory() as session:
            task = await session.get(BackgroundTask, key)
            return task is not None and bool(task.cancel_requested)


def _parse_id(task_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(task_id)
    except ValueError:
        return None
