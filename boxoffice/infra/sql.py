"""
Async engine construction for the order store.

PostgreSQL runs through asyncpg with a bounded pool. SQLite (development
and tests) runs through aiosqlite in WAL mode; every transaction there is
opened with BEGIN IMMEDIATE, so concurrent writers wait on busy_timeout
rather than failing when a read snapshot is upgraded to a write.
"""
import asyncio
from typing import Any, Dict

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine
)

from .. import config

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def normalize_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://")


def _pool_options(url: str) -> Dict[str, Any]:
    opts: Dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("postgresql+asyncpg://"):
        opts.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_timeout=config.DB_POOL_TIMEOUT,
        )
    return opts


def _install_sqlite_hooks(sync_engine: Engine) -> None:
    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        # driver-level autobegin off; _on_begin issues the BEGIN
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        for pragma in ("journal_mode=WAL", "busy_timeout=5000",
                       "synchronous=NORMAL"):
            cur.execute(f"PRAGMA {pragma};")
        cur.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_async_engine(database_url: str):
    """
    Returns (engine, session factory, gated) where `gated()` is an async
    context manager bounding how many sessions this process holds at once.
    """
    url = normalize_async_url(database_url)
    engine = create_async_engine(url, **_pool_options(url))
    if _is_sqlite(url):
        _install_sqlite_hooks(engine.sync_engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # never queue more sessions than the pool can hand out
    limit = config.DB_GATE_LIMIT or (
        config.DB_POOL_SIZE + config.DB_MAX_OVERFLOW
        if not _is_sqlite(url) else 10
    )
    gate = asyncio.Semaphore(max(1, limit))

    def gated():
        return gate

    return engine, SessionAsync, gated
