"""
Async database session management — PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    db = Database("sqlite:///./flowdesk.db")
    await db.init()                         # create tables
    async with db.session() as s:           # unit of work, commits on exit
        ...
    await db.close()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from database.models import Base

logger = structlog.get_logger()


def to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    return db_url


def _engine_kwargs(db_url: str, echo: bool) -> dict:
    base = {"echo": echo}
    if "sqlite" in db_url:
        return base
    return {
        **base,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


class Database:
    """Owns one async engine and its session factory."""

    def __init__(self, url: str, echo: bool = False):
        async_url = to_async_url(url)
        self.engine: AsyncEngine = create_async_engine(async_url, **_engine_kwargs(async_url, echo))
        self._factory = async_sessionmaker(self.engine, expire_on_commit=False)
        logger.info("database_engine_created", dialect=self.engine.dialect.name)

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_ready")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("database_engine_disposed")
