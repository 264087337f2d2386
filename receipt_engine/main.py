from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from receipt_engine.cache.result_cache import InMemoryResultCache
from receipt_engine.core.config import Settings, settings as default_settings
from receipt_engine.core.logging import configure_logging
from receipt_engine.db.init_db import init_db
from receipt_engine.db.session import create_engine, create_session_factory
from receipt_engine.ocr.factory import build_backends
from receipt_engine.pipeline.pipeline import ExtractionEngine
from receipt_engine.storage.object_store import object_store_from_settings
from receipt_engine.storage.task_store import InMemoryTaskStore, SqlTaskStore, TaskStore

logger = logging.getLogger(__name__)


def _task_store(cfg: Settings, db_engine: AsyncEngine | None) -> TaskStore:
    if cfg.database_url:
        return SqlTaskStore(create_session_factory(db_engine or create_engine(cfg.database_url)))
    logger.warning("task_store_in_memory", extra={"app_env": cfg.app_env})
    return InMemoryTaskStore()


def build_engine(cfg: Settings | None = None, db_engine: AsyncEngine | None = None) -> ExtractionEngine:
    """Wire every collaborator from settings. Call once per process."""
    cfg = cfg or default_settings
    configure_logging(cfg.log_level)
    engine = ExtractionEngine(
        build_backends(cfg),
        cache=InMemoryResultCache(default_ttl=cfg.cache_ttl_seconds),
        task_store=_task_store(cfg, db_engine),
        settings=cfg,
        object_store=object_store_from_settings(cfg),
    )
    logger.info(
        "engine_built",
        extra={
            "app_env": cfg.app_env,
            "default_backend": cfg.default_backend,
            "fallback_order": cfg.fallback_provider_order() if cfg.fallback_enabled else [],
        },
    )
    return engine


async def start_engine(cfg: Settings | None = None) -> ExtractionEngine:
    """Build the engine, create the task table if needed and start background work."""
    cfg = cfg or default_settings
    db_engine = None
    if cfg.database_url:
        db_engine = create_engine(cfg.database_url)
        await init_db(db_engine)
    engine = build_engine(cfg, db_engine)
    engine.start()
    logger.info("startup")
    return engine
