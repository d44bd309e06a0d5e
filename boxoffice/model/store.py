from __future__ import annotations
import asyncio
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from .. import config
from ..errors import TransientStoreFailure
from ..infra.sql import make_async_engine
from ..infra.timings import timeit
from .orm import Base
from .inventory import seed_inventory

logger = structlog.get_logger(__name__)

Gated = Callable[[], AsyncContextManager[None]]
T = TypeVar("T")


@dataclass
class Store:
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    gated: Gated

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One gated session, one transaction; rolls back on exception."""
        async with self.gated():
            async with self.sessionmaker() as session:
                async with session.begin():
                    yield session

    async def dispose(self) -> None:
        await self.engine.dispose()


def open_store(database_url: str) -> Store:
    engine, SessionAsync, gated = make_async_engine(database_url)
    return Store(engine=engine, sessionmaker=SessionAsync, gated=gated)


async def init_db(store: Store, inventory: dict[str, int]) -> None:
    # Create tables and seed ticket types that don't exist yet
    async with store.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await seed_inventory(conn, inventory)


async def run_transaction(
    store: Store,
    fn: Callable[[AsyncSession], Awaitable[T]],
    *,
    key: str,
    kind: str = "store.tx",
    attempts: int | None = None,
    backoff: float | None = None,
) -> T:
    """
    Run `fn(session)` in its own transaction, retrying from scratch when a
    conditional write inside it raises TransientStoreFailure.
    Anything else rolls back and propagates.
    """
    attempts = attempts or config.TX_ATTEMPTS
    backoff = config.TX_BACKOFF_SECONDS if backoff is None else backoff
    for attempt in range(1, attempts + 1):
        try:
            async with timeit(kind):
                async with store.transaction() as session:
                    return await fn(session)
        except TransientStoreFailure:
            if attempt >= attempts:
                logger.error("transaction_retries_exhausted", key=key,
                             kind=kind, attempts=attempts)
                raise
            logger.info("transaction_conflict", key=key, kind=kind,
                        attempt=attempt)
            # jitter so colliding writers don't collide again
            await asyncio.sleep(backoff * attempt * (0.5 + random.random()))
    raise AssertionError("unreachable")
