from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from memcore.core.config import Settings, get_settings
from memcore.core.logging import setup_logging
from memcore.db.base import create_engine, create_sessionmaker, init_db
from memcore.services.memory_service import MemoryService, create_memory_service


@dataclass
class MemoryRuntime:
    """Engine, sessionmaker and memory service for one process."""

    settings: Settings
    engine: AsyncEngine
    sessionmaker: async_sessionmaker[AsyncSession]
    memory_service: MemoryService

    async def startup(self) -> None:
        await init_db(self.engine)

    async def shutdown(self) -> None:
        await self.memory_service.shutdown()
        await self.engine.dispose()

    @asynccontextmanager
    async def lifespan(self) -> AsyncIterator["MemoryRuntime"]:
        await self.startup()
        try:
            yield self
        finally:
            await self.shutdown()


def create_runtime(settings: Optional[Settings] = None) -> MemoryRuntime:
    """Create and configure the memory runtime."""

    settings = settings or get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)
    return MemoryRuntime(
        settings=settings,
        engine=engine,
        sessionmaker=sessionmaker,
        memory_service=create_memory_service(sessionmaker=sessionmaker, settings=settings),
    )
