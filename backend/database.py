"""
Database Module
===============
AsyncPG connection pool for the durable processed-event store.

The only table owned here is ``processed_events``; its primary key is what
makes the idempotency claim atomic across workers.

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

logger = structlog.get_logger(component="database")


PROCESSED_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS processed_events (
    event_id     TEXT PRIMARY KEY,
    outcome      VARCHAR(32) NOT NULL,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at   TIMESTAMPTZ NOT NULL
)
"""

PROCESSED_EVENTS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_processed_events_expires_at
    ON processed_events (expires_at)
"""


class Database:
    """Async connection pool manager"""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """Create the pool and make sure the schema exists."""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
            )
            logger.info("pool_initialized", min_size=self._min_size, max_size=self._max_size)
            await self._ensure_schema()
        except Exception as e:
            logger.error("pool_init_failed", error=str(e))
            raise

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("pool_closed")

    @asynccontextmanager
    async def acquire(self):
        if self._pool is None:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _ensure_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(PROCESSED_EVENTS_DDL)
            await conn.execute(PROCESSED_EVENTS_INDEX)
