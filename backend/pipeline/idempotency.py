"""
Idempotency Guard
=================
Suppresses re-processing of a notification already handled once.

The claim is a single atomic test-and-insert: under concurrent duplicate
deliveries exactly one caller sees FRESH. In memory that is one critical
section under an asyncio.Lock; in Postgres it is an INSERT ... ON CONFLICT
against the primary key.

Claim lifecycle:
    try_claim  -> record(outcome=processing)
    settle     -> processed | skipped | logged | failed_permanent
    release    -> record deleted (transient failure; redelivery is FRESH again)
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Dict, Optional

import structlog

from database import Database
from schemas.event_definitions import (
    GuardOutcome,
    ProcessedEventRecord,
    ProcessingOutcome,
    utcnow,
)

DEFAULT_TTL_SECONDS = 86400 * 7  # provider redelivers for up to 3 days


# =============================================================================
# STORE INTERFACE
# =============================================================================

class IProcessedEventStore(ABC):
    """Persistence for ProcessedEventRecords"""

    @abstractmethod
    async def try_claim(self, event_id: str, ttl_seconds: int) -> bool:
        """Atomically insert a processing record. True if this caller won."""
        pass

    @abstractmethod
    async def settle(self, event_id: str, outcome: ProcessingOutcome) -> bool:
        pass

    @abstractmethod
    async def release(self, event_id: str) -> bool:
        pass

    @abstractmethod
    async def get(self, event_id: str) -> Optional[ProcessedEventRecord]:
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryProcessedEventStore(IProcessedEventStore):
    """Single-process store; the lock makes check-and-set one step."""

    def __init__(self, clock: Callable = utcnow):
        self._records: Dict[str, ProcessedEventRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def try_claim(self, event_id: str, ttl_seconds: int) -> bool:
        async with self._lock:
            now = self._clock()
            existing = self._records.get(event_id)
            if existing is not None and not existing.is_expired(now):
                return False
            self._records[event_id] = ProcessedEventRecord(
                event_id=event_id,
                processed_at=now,
                outcome=ProcessingOutcome.PROCESSING,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            return True

    async def settle(self, event_id: str, outcome: ProcessingOutcome) -> bool:
        async with self._lock:
            record = self._records.get(event_id)
            if record is None:
                return False
            self._records[event_id] = record.model_copy(
                update={"outcome": outcome, "processed_at": self._clock()}
            )
            return True

    async def release(self, event_id: str) -> bool:
        async with self._lock:
            return self._records.pop(event_id, None) is not None

    async def get(self, event_id: str) -> Optional[ProcessedEventRecord]:
        async with self._lock:
            return self._records.get(event_id)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for key in expired:
                del self._records[key]
            return len(expired)

    async def count(self) -> int:
        async with self._lock:
            return len(self._records)


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

class PostgresProcessedEventStore(IProcessedEventStore):
    """
    Durable store shared by every worker.
    An expired row may be reclaimed; a live row blocks the insert.
    """

    CLAIM_SQL = """
        INSERT INTO processed_events (event_id, outcome, processed_at, expires_at)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (event_id) DO UPDATE
            SET outcome = EXCLUDED.outcome,
                processed_at = EXCLUDED.processed_at,
                expires_at = EXCLUDED.expires_at
            WHERE processed_events.expires_at <= $3
        RETURNING event_id
    """

    def __init__(self, db: Database):
        self._db = db

    async def try_claim(self, event_id: str, ttl_seconds: int) -> bool:
        now = utcnow()
        row = await self._db.fetch_one(
            self.CLAIM_SQL,
            event_id,
            ProcessingOutcome.PROCESSING.value,
            now,
            now + timedelta(seconds=ttl_seconds),
        )
        return row is not None

    async def settle(self, event_id: str, outcome: ProcessingOutcome) -> bool:
        status = await self._db.execute(
            "UPDATE processed_events SET outcome = $2, processed_at = $3 WHERE event_id = $1",
            event_id,
            outcome.value,
            utcnow(),
        )
        return _affected(status) > 0

    async def release(self, event_id: str) -> bool:
        status = await self._db.execute(
            "DELETE FROM processed_events WHERE event_id = $1", event_id
        )
        return _affected(status) > 0

    async def get(self, event_id: str) -> Optional[ProcessedEventRecord]:
        row = await self._db.fetch_one(
            "SELECT event_id, outcome, processed_at, expires_at FROM processed_events WHERE event_id = $1",
            event_id,
        )
        if row is None:
            return None
        return ProcessedEventRecord(
            event_id=row["event_id"],
            outcome=ProcessingOutcome(row["outcome"]),
            processed_at=row["processed_at"],
            expires_at=row["expires_at"],
        )

    async def purge_expired(self) -> int:
        status = await self._db.execute(
            "DELETE FROM processed_events WHERE expires_at <= $1", utcnow()
        )
        return _affected(status)

    async def count(self) -> int:
        row = await self._db.fetch_one("SELECT COUNT(*) AS count FROM processed_events")
        return row["count"] if row else 0


def _affected(status: str) -> int:
    """asyncpg returns command tags like 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


# =============================================================================
# GUARD
# =============================================================================

class IdempotencyGuard:
    """Front door for duplicate suppression."""

    def __init__(self, store: IProcessedEventStore, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._logger = structlog.get_logger().bind(component="idempotency_guard")

    async def check(self, event_id: str) -> GuardOutcome:
        if await self.store.try_claim(event_id, self.ttl_seconds):
            return GuardOutcome.FRESH
        self._logger.info("duplicate_suppressed", event_id=event_id)
        return GuardOutcome.DUPLICATE

    async def complete(self, event_id: str, outcome: ProcessingOutcome) -> None:
        await self.store.settle(event_id, outcome)

    async def release(self, event_id: str) -> None:
        """Give the claim back so the provider's redelivery is processed."""
        released = await self.store.release(event_id)
        self._logger.info("claim_released", event_id=event_id, released=released)
