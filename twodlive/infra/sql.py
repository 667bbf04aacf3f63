import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",  # heroku style
}


def normalize_async_url(url: str) -> str:
    for prefix, driver in ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return url.replace(prefix, driver, 1)
    return url


# DB gate: at most `limit` coroutines talk to the database at once, the rest
# queue here instead of inside the connection pool
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _sqlite_pragmas(dbapi_connection, _):
    cur = dbapi_connection.cursor()
    # concurrent writers wait for the lock instead of failing
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.close()


def make_async_engine(
    database_url: str,
    pool_size: int = 10,
    gate_limit: Optional[int] = None,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    db_url = normalize_async_url(database_url)
    kw = dict(pool_pre_ping=True)
    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(pool_size=pool_size, max_overflow=pool_size,
                  pool_timeout=30)

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    db_gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, gated
