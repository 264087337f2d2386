"""Extraction engine: cache -> preprocess -> backends (with fallback) -> fields.

One engine is built per process (see ``receipt_engine.main.build_engine``)
and shared; adapters, the cache and the task store are injected.

Single document:
    content hash -> cache lookup -> preprocess -> FallbackController.run
    -> FieldExtractor.derive + merge -> cache store

Batches are staged in the object store and handed to the ``run_batch``
Celery task, which drives a ``BatchOrchestrator`` that calls
``process_document`` per item and owns the task to its terminal status.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from receipt_engine.cache.result_cache import ResultCache, cache_key, run_periodic_sweep
from receipt_engine.core.config import Settings
from receipt_engine.extraction.extractor import (
    DEFAULT_FIELDS,
    ODOMETER_FIELD,
    FieldExtractor,
    OdometerReading,
    ReceiptRecord,
    merge_fields,
    parse_decimal,
)
from receipt_engine.ocr.base import (
    IMAGE_CONTENT_TYPES,
    BackendAdapter,
    BackendId,
    RecognitionOptions,
    RecognitionResult,
    content_hash,
)
from receipt_engine.pipeline.batch import BatchMode, BatchOrchestrator, BatchProgress
from receipt_engine.pipeline.fallback import FallbackController
from receipt_engine.preprocessing.preprocessor import ImagePreprocessor, PreprocessingOptions
from receipt_engine.storage.object_store import ObjectStore
from receipt_engine.storage.task_store import TaskStore
from receipt_engine.worker.tasks import bind_engine, run_batch_task, unbind_engine

logger = logging.getLogger(__name__)

BATCH_TASK_KIND = "batch_upload"


@dataclass(frozen=True)
class ProcessingOptions:
    backend: str | None = None          # None -> settings.default_backend
    preprocess: bool | None = None      # None -> settings.preprocessing_enabled
    language: str | None = None
    requested_fields: tuple[str, ...] = DEFAULT_FIELDS

    def to_payload(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload["requested_fields"] = list(self.requested_fields)
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ProcessingOptions:
        return cls(
            backend=payload.get("backend"),
            preprocess=payload.get("preprocess"),
            language=payload.get("language"),
            requested_fields=tuple(payload.get("requested_fields") or DEFAULT_FIELDS),
        )


@dataclass(frozen=True)
class BatchDocument:
    data: bytes | None = None
    path: str | None = None             # object-store key, fetched when data is absent
    content_type: str = "image/jpeg"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> BatchDocument:
        return cls(path=payload.get("path"), content_type=payload.get("content_type") or "image/jpeg")


class ExtractionEngine:
    def __init__(
        self,
        backends: Mapping[BackendId, BackendAdapter],
        *,
        cache: ResultCache | None,
        task_store: TaskStore,
        settings: Settings,
        preprocessor: ImagePreprocessor | None = None,
        extractor: FieldExtractor | None = None,
        fallback: FallbackController | None = None,
        object_store: ObjectStore | None = None,
    ) -> None:
        self._backends = dict(backends)
        self._cache = cache if settings.cache_enabled else None
        self._task_store = task_store
        self._settings = settings
        self._preprocessor = preprocessor or ImagePreprocessor(PreprocessingOptions.from_settings(settings))
        self._extractor = extractor or FieldExtractor()
        self._fallback = fallback or FallbackController(
            settings.fallback_provider_order(),
            enabled=settings.fallback_enabled,
            max_attempts=settings.fallback_max_attempts,
        )
        self._object_store = object_store
        self._started = False
        self._sweep_stop: asyncio.Event | None = None
        self._sweep_task: asyncio.Task | None = None

    @property
    def backends(self) -> Mapping[BackendId, BackendAdapter]:
        return self._backends

    # ------------------------------------------------------------------ #
    #  Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Bind this engine to the running loop for batch jobs and start the cache sweep."""
        bind_engine(self, asyncio.get_running_loop())
        self._started = True
        interval = self._settings.cache_sweep_interval_seconds
        if self._cache is not None and interval > 0 and self._sweep_task is None:
            self._sweep_stop = asyncio.Event()
            self._sweep_task = asyncio.create_task(run_periodic_sweep(self._cache, interval, self._sweep_stop))

    async def aclose(self) -> None:
        unbind_engine(self)
        self._started = False
        if self._sweep_task is not None:
            self._sweep_stop.set()
            await self._sweep_task
            self._sweep_task = None
        for adapter in self._backends.values():
            await adapter.aclose()

    async def __aenter__(self) -> ExtractionEngine:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    #  Single document                                                    #
    # ------------------------------------------------------------------ #

    async def process_document(
        self,
        buffer: bytes,
        content_type: str = "image/jpeg",
        options: ProcessingOptions | None = None,
    ) -> RecognitionResult:
        """Recognise one document and fill in the requested fields.

        Raises ``AllBackendsExhausted`` (with the last backend's error) when
        every attempted backend failed, ``BackendUnavailable`` when none
        could be attempted.
        """
        opts = options or ProcessingOptions()
        fields = tuple(opts.requested_fields)
        preprocess = self._settings.preprocessing_enabled if opts.preprocess is None else opts.preprocess
        raw_hash = content_hash(buffer)
        key = cache_key(raw_hash, language=opts.language, requested_fields=fields, preprocess=preprocess)

        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                logger.info("cache_hit", extra={"content_hash": raw_hash[:12], "backend": cached.backend_id})
                return cached

        payload = buffer
        if preprocess and content_type in IMAGE_CONTENT_TYPES:
            loop = asyncio.get_running_loop()
            payload = await loop.run_in_executor(None, self._preprocessor.transform, buffer, content_type)

        recognition = RecognitionOptions(language=opts.language, requested_fields=fields, content_type=content_type)
        result = await self._fallback.run(
            self._backends, payload, recognition, primary=opts.backend or self._settings.default_backend
        )

        missing = [name for name in fields if not (result.fields and name in result.fields)]
        merged = merge_fields(result.fields, self._extractor.derive(result.text, missing))
        line_items = () if ODOMETER_FIELD in fields else tuple(self._extractor.extract_line_items(result.text))
        result = dataclasses.replace(
            result, content_hash=raw_hash, fields=merged or None, line_items=line_items
        )

        if self._cache is not None and result.ok:
            self._cache.put(key, result, ttl=self._settings.cache_ttl_seconds)

        logger.info(
            "document_processed",
            extra={
                "content_hash": raw_hash[:12],
                "backend": result.backend_id,
                "confidence": round(result.confidence, 4),
                "fields": sorted(merged),
                "elapsed_ms": result.elapsed_ms,
            },
        )
        return result

    async def process_receipt(
        self,
        buffer: bytes,
        content_type: str = "image/jpeg",
        options: ProcessingOptions | None = None,
    ) -> ReceiptRecord:
        result = await self.process_document(buffer, content_type, options)
        return ReceiptRecord.from_result(result)

    async def read_odometer(
        self,
        buffer: bytes,
        content_type: str = "image/jpeg",
        backend: str | None = None,
    ) -> OdometerReading:
        options = ProcessingOptions(backend=backend, requested_fields=(ODOMETER_FIELD,))
        result = await self.process_document(buffer, content_type, options)
        found = (result.fields or {}).get(ODOMETER_FIELD)
        if found is None:
            return OdometerReading(reading=None, confidence=0.0, raw=result)
        return OdometerReading(reading=parse_decimal(found.value), confidence=found.confidence, raw=result)

    # ------------------------------------------------------------------ #
    #  Batches                                                            #
    # ------------------------------------------------------------------ #

    async def process_batch(
        self,
        documents: Sequence[BatchDocument],
        options: ProcessingOptions | None = None,
        task_id: str | None = None,
    ) -> str:
        """Stage the batch in the object store, enqueue it and return its task id.

        Only the task id and object-store paths go on the queue. With eager
        Celery (dev, test) the batch has run to its terminal status by the
        time this returns.
        """
        if task_id is None:
            task_id = await self._task_store.create_task(BATCH_TASK_KIND)
        if not self._started:
            self.start()
        staged = [await self._stage_document(task_id, index, doc) for index, doc in enumerate(documents)]
        payload = options.to_payload() if options is not None else None
        # Eager jobs block the calling thread until they finish
        async_result = await asyncio.to_thread(run_batch_task.delay, task_id, staged, payload)
        logger.info(
            "batch_enqueued",
            extra={"task_id": task_id, "celery_task_id": async_result.id, "documents": len(staged)},
        )
        return task_id

    async def cancel_batch(self, task_id: str) -> bool:
        """Ask the worker running ``task_id`` to stop; False if it is unknown or finished."""
        accepted = await self._task_store.request_cancel(task_id)
        logger.info("batch_cancel_requested", extra={"task_id": task_id, "accepted": accepted})
        return accepted

    async def run_batch(
        self,
        task_id: str,
        documents: Sequence[BatchDocument],
        options: ProcessingOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchProgress:
        """Run a batch to its terminal status.

        Without ``cancel_event`` the task store is polled for a cancellation
        request every ``batch_cancel_poll_seconds``.
        """
        async def process(document: BatchDocument) -> RecognitionResult:
            return await self._process_batch_document(document, options)

        orchestrator = BatchOrchestrator(
            process,
            self._task_store,
            mode=BatchMode.PARALLEL if self._settings.batch_parallel_enabled else BatchMode.SEQUENTIAL,
            max_concurrency=self._settings.batch_max_concurrency,
            update_timeout=self._settings.task_store_timeout_seconds,
        )
        if cancel_event is not None:
            return await orchestrator.run(task_id, documents, cancel_event=cancel_event)

        cancel_event = asyncio.Event()
        if await self._cancel_requested(task_id):
            cancel_event.set()
        watcher = asyncio.create_task(self._watch_cancellation(task_id, cancel_event))
        try:
            return await orchestrator.run(task_id, documents, cancel_event=cancel_event)
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

    async def _cancel_requested(self, task_id: str) -> bool:
        try:
            return await asyncio.wait_for(
                self._task_store.is_cancel_requested(task_id),
                timeout=self._settings.task_store_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "cancel_check_failed", extra={"task_id": task_id, "error": str(exc) or type(exc).__name__}
            )
            return False

    async def _watch_cancellation(self, task_id: str, cancel_event: asyncio.Event) -> None:
        while not cancel_event.is_set():
            await asyncio.sleep(self._settings.batch_cancel_poll_seconds)
            if await self._cancel_requested(task_id):
                logger.info("batch_cancel_observed", extra={"task_id": task_id})
                cancel_event.set()

    async def _stage_document(self, task_id: str, index: int, document: BatchDocument) -> dict[str, Any]:
        path = document.path
        if document.data is not None:
            if self._object_store is None:
                raise ValueError("No object store configured to stage batch documents")
            path = f"{self._settings.batch_staging_prefix}/{task_id}/{index:04d}"
            await self._object_store.upload(path, document.data)
        return {"path": path, "content_type": document.content_type}

    async def _process_batch_document(
        self, document: BatchDocument, options: ProcessingOptions | None
    ) -> RecognitionResult:
        data = document.data
        if data is None:
            if document.path is None:
                raise ValueError("Batch document has neither data nor path")
            if self._object_store is None:
                raise ValueError(f"No object store configured to fetch {document.path!r}")
            data = await self._object_store.download(document.path)
        return await self.process_document(data, document.content_type, options)
