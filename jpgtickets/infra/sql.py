from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def normalize_async_url(url: str) -> str:
    for plain, driver in ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in ("journal_mode=WAL", "busy_timeout=5000",
                       "synchronous=NORMAL"):
            cur.execute(f"PRAGMA {pragma};")
        cur.close()


@dataclass
class Database:
    """Engine, session factory and the DB gate, created together.

    Every store transaction runs as ``async with gated(): async with
    db.begin():`` so waiters queue on the semaphore, not in the pool.
    """
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gate: asyncio.Semaphore

    @asynccontextmanager
    async def _hold(self) -> AsyncIterator[None]:
        await self.gate.acquire()
        try:
            yield
        finally:
            self.gate.release()

    def gated(self) -> AsyncContextManager[None]:
        return self._hold()

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def open_database(database_url: str, *, pool_size: int = 10,
                  max_overflow: int = 10,
                  gate_limit: Optional[int] = None) -> Database:
    db_url = normalize_async_url(database_url)
    is_pg = db_url.startswith("postgresql+asyncpg://")

    kw = dict(future=True, pool_pre_ping=True)
    if is_pg:
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=30)
    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _sqlite_pragmas(engine)

    if gate_limit is None:
        gate_limit = pool_size if is_pg else 10
    logger.info("database %s (gate %d)", engine.url.render_as_string(
        hide_password=True), gate_limit)

    return Database(
        engine=engine,
        SessionAsync=async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False,
            autoflush=False,
        ),
        gate=asyncio.Semaphore(max(1, gate_limit)),
    )
