from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from receipt_engine.db.models import Base

logger = logging.getLogger(__name__)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized")
