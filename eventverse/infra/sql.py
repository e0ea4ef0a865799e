import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Dict, Tuple

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

# sync scheme -> async driver
_ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA foreign_keys=ON",
)


def normalize_async_url(url: str) -> str:
    for prefix, driver in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


def _pool_options(url: str) -> Dict[str, int]:
    if not url.startswith("postgresql+asyncpg://"):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


def _use_sqlite_pragmas(sync_engine: Engine) -> None:
    # writers wait up to busy_timeout for the lock
    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cur = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def make_gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def make_async_engine(
    database_url: str,
) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession], Gated]:
    """Build the engine, a session factory and the DB gate.

    The gate bounds concurrent transactions to the pool size so requests
    queue on the semaphore instead of timing out inside the pool.
    """
    url = normalize_async_url(database_url)
    pool = _pool_options(url)
    engine = create_async_engine(url, pool_pre_ping=True, **pool)
    if url.startswith("sqlite+aiosqlite://"):
        _use_sqlite_pragmas(engine.sync_engine)

    SessionAsync = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )
    limit = int(os.getenv("DB_GATE_LIMIT", pool.get("pool_size", 10)))
    return engine, SessionAsync, make_gate(limit)
