"""
FlowDatabase — the SQL connection a SqlFlowStore runs on.

One instance per store, no module globals: tests and tools can hold
several databases side by side and dispose each one on its own.

    db = FlowDatabase("sqlite:///./converse_flows.db")
    await db.create_tables()
    async with db.transaction() as tx:
        await tx.execute(...)
    await db.dispose()

Plain URLs are mapped to the async driver this package installs:
postgresql:// → asyncpg, mysql:// → aiomysql, sqlite:// → aiosqlite.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def async_url(db_url: str) -> str:
    """Rewrite a plain database URL to its async driver; other URLs pass through."""
    for plain, driver in _ASYNC_DRIVERS:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def redact_url(db_url: str) -> str:
    """Drop credentials for logging."""
    scheme, sep, rest = db_url.partition("://")
    return f"{scheme}{sep}{rest.split('@')[-1]}" if sep else db_url


class FlowDatabase:
    """Lazily created async engine plus a commit-or-rollback scope."""

    def __init__(self, url: str, echo: bool = False):
        self.url = async_url(url)
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            kwargs = {"echo": self.echo}
            if not self.url.startswith("sqlite"):
                # Server databases drop idle connections
                kwargs["pool_pre_ping"] = True
            self._engine = create_async_engine(self.url, **kwargs)
            logger.info("flow_database_connected", dialect=self._engine.dialect.name,
                        url=redact_url(self.url))
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One unit of work: committed on exit, rolled back on error."""
        if self._sessions is None:
            self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)
        async with self._sessions() as tx:
            try:
                yield tx
                await tx.commit()
            except Exception:
                await tx.rollback()
                raise

    # ── Schema ────────────────────────────────────────────────

    async def create_tables(self) -> list[str]:
        """Create the flow tables that do not exist yet. Returns the tables present afterwards."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        tables = await self.existing_tables()
        logger.info("flow_tables_ready", dialect=self.dialect, tables=tables)
        return tables

    async def existing_tables(self) -> list[str]:
        async with self.engine.connect() as conn:
            return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    async def missing_tables(self) -> list[str]:
        existing = set(await self.existing_tables())
        return sorted(set(Base.metadata.tables) - existing)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.info("flow_database_closed")
