"""
Async engine setup shared by the server, init_db.py and the tests.

Every public model function takes a `GatedAsyncSession` and wraps its
transaction in `async with db.gated():`. The gate caps how many coroutines
talk to the database at once; it never provides exclusivity. Two requests
racing for the same seat or the same coin are decided by conditional
UPDATEs inside the database.
"""
import os
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, NamedTuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# applied to every new sqlite connection
_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


class Database(NamedTuple):
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gate: asyncio.Semaphore
    gated: Gated


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


@asynccontextmanager
async def _hold(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def make_async_engine(database_url: str) -> Database:
    url = async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    if url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
        default_gate = pool_size
    else:
        # sqlite serializes writers anyway; the gate only bounds waiting
        default_gate = 10

    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    gate = asyncio.Semaphore(max(1, int(os.getenv("DB_GATE_LIMIT",
                                                  default_gate))))

    def gated():
        return _hold(gate)

    return Database(engine, SessionAsync, gate, gated)
