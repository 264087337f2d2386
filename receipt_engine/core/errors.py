"""Error taxonomy for the extraction engine.

Adapters raise ``BackendCallFailed``; the fallback controller turns a fully
failed pass into ``AllBackendsExhausted``; the batch orchestrator converts
per-document errors into error-carrying results and only lets
``TaskStoreUnreachable`` escape.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from receipt_engine.pipeline.batch import BatchProgress


class ExtractionError(Exception):
    """Base class for every engine error."""


class BackendUnavailable(ExtractionError):
    """No configured backend could be attempted."""


class BackendCallFailed(ExtractionError):
    def __init__(self, backend_id: str, message: str) -> None:
        super().__init__(f"{backend_id}: {message}")
        self.backend_id = backend_id
        self.reason = message


class BackendTimeout(BackendCallFailed):
    pass


class AllBackendsExhausted(ExtractionError):
    def __init__(self, last_error: Exception, attempted: list[str]) -> None:
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempted = attempted


class PreprocessingDegraded(ExtractionError):
    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step


class TaskStoreUnreachable(ExtractionError):
    def __init__(self, message: str, progress: BatchProgress | None = None) -> None:
        super().__init__(message)
        self.progress = progress


class ObjectNotFound(ExtractionError):
    pass
