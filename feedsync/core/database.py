"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
from typing import Optional, Tuple
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from feedsync.core.config import Settings
from feedsync.core.logging import get_logger
from feedsync.models.cache import CacheEntry

logger = get_logger(__name__)

# (value, stored_at, ttl)
CacheRow = Tuple[str, float, float]


class Database:
    """Async database service backing the durable TTL cache."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    @property
    def is_ready(self) -> bool:
        return self.async_session is not None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs = {"echo": self.settings.database_echo, "future": True}
            if not self.settings.uses_sqlite:
                engine_kwargs.update(pool_size=5, max_overflow=10)

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Cache Entries
    # ============================================================================

    async def get_cache_entry(self, key: str) -> Optional[CacheRow]:
        """Get the raw cache row by key, expired or not."""
        async with self.get_session() as session:
            stmt = select(CacheEntry).where(CacheEntry.key == key)
            result = await session.execute(stmt)
            entry = result.scalar_one_or_none()

            if not entry:
                return None
            return entry.value, entry.stored_at, entry.ttl

    async def set_cache_entry(self, key: str, value: str, stored_at: float, ttl: float) -> None:
        """Create or overwrite a cache row."""
        async with self.get_session() as session:
            stmt = select(CacheEntry).where(CacheEntry.key == key)
            result = await session.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing:
                existing.value = value
                existing.stored_at = stored_at
                existing.ttl = ttl
            else:
                session.add(CacheEntry(key=key, value=value, stored_at=stored_at, ttl=ttl))

            await session.commit()

    async def delete_cache_entry(self, key: str) -> bool:
        """Delete cache row by key. Returns True when a row was removed."""
        async with self.get_session() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            await session.commit()
            return bool(result.rowcount)

    async def delete_cache_prefix(self, prefix: str) -> int:
        """Delete every cache row whose key starts with `prefix`."""
        async with self.get_session() as session:
            stmt = delete(CacheEntry).where(CacheEntry.key.startswith(prefix, autoescape=True))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0
