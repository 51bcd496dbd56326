from __future__ import annotations

import asyncio
from typing import Any

from pipeline.idempotency import (
    IdempotencyGuard,
    InMemoryProcessedEventStore,
    PostgresProcessedEventStore,
    _affected,
)
from schemas.event_definitions import GuardOutcome, ProcessingOutcome
from support import FakeUtcClock


def test_first_claim_is_fresh_and_replay_is_duplicate() -> None:
    async def scenario() -> None:
        guard = IdempotencyGuard(InMemoryProcessedEventStore())

        assert await guard.check("evt_1") == GuardOutcome.FRESH
        assert await guard.check("evt_1") == GuardOutcome.DUPLICATE
        assert await guard.check("evt_2") == GuardOutcome.FRESH

    asyncio.run(scenario())


def test_concurrent_claims_produce_exactly_one_fresh() -> None:
    async def scenario() -> list[GuardOutcome]:
        guard = IdempotencyGuard(InMemoryProcessedEventStore())
        return await asyncio.gather(*(guard.check("evt_race") for _ in range(25)))

    outcomes = asyncio.run(scenario())

    assert outcomes.count(GuardOutcome.FRESH) == 1
    assert outcomes.count(GuardOutcome.DUPLICATE) == 24


def test_settle_records_outcome() -> None:
    async def scenario() -> None:
        store = InMemoryProcessedEventStore()
        guard = IdempotencyGuard(store)
        await guard.check("evt_1")

        record = await store.get("evt_1")
        assert record.outcome == ProcessingOutcome.PROCESSING

        await guard.complete("evt_1", ProcessingOutcome.PROCESSED)
        record = await store.get("evt_1")
        assert record.outcome == ProcessingOutcome.PROCESSED

    asyncio.run(scenario())


def test_released_claim_is_fresh_again() -> None:
    async def scenario() -> None:
        store = InMemoryProcessedEventStore()
        guard = IdempotencyGuard(store)
        await guard.check("evt_1")
        await guard.release("evt_1")

        assert await store.get("evt_1") is None
        assert await guard.check("evt_1") == GuardOutcome.FRESH

    asyncio.run(scenario())


def test_expired_record_counts_as_absent() -> None:
    async def scenario() -> None:
        clock = FakeUtcClock()
        guard = IdempotencyGuard(InMemoryProcessedEventStore(clock=clock), ttl_seconds=60)

        assert await guard.check("evt_1") == GuardOutcome.FRESH
        clock.advance(59)
        assert await guard.check("evt_1") == GuardOutcome.DUPLICATE
        clock.advance(1)
        assert await guard.check("evt_1") == GuardOutcome.FRESH

    asyncio.run(scenario())


def test_purge_expired_removes_only_expired() -> None:
    async def scenario() -> None:
        clock = FakeUtcClock()
        store = InMemoryProcessedEventStore(clock=clock)
        await store.try_claim("old", ttl_seconds=10)
        await store.try_claim("new", ttl_seconds=100)
        clock.advance(50)

        assert await store.purge_expired() == 1
        assert await store.count() == 1
        assert await store.get("new") is not None

    asyncio.run(scenario())


class FakeDatabase:
    def __init__(self, claim_row: Any = None, status: str = "UPDATE 1") -> None:
        self.claim_row = claim_row
        self.status = status
        self.calls: list[tuple[str, tuple]] = []

    async def fetch_one(self, query: str, *args: Any) -> Any:
        self.calls.append((query, args))
        return self.claim_row

    async def execute(self, query: str, *args: Any) -> str:
        self.calls.append((query, args))
        return self.status


def test_postgres_claim_uses_single_upsert_statement() -> None:
    async def scenario() -> None:
        won = PostgresProcessedEventStore(FakeDatabase(claim_row={"event_id": "evt_1"}))
        lost = PostgresProcessedEventStore(FakeDatabase(claim_row=None))

        assert await won.try_claim("evt_1", ttl_seconds=60) is True
        assert await lost.try_claim("evt_1", ttl_seconds=60) is False

        query, args = won._db.calls[0]
        assert "ON CONFLICT (event_id)" in query
        assert args[0] == "evt_1"
        assert args[1] == ProcessingOutcome.PROCESSING.value
        assert (args[3] - args[2]).total_seconds() == 60

    asyncio.run(scenario())


def test_postgres_release_reports_affected_rows() -> None:
    async def scenario() -> None:
        store = PostgresProcessedEventStore(FakeDatabase(status="DELETE 1"))
        assert await store.release("evt_1") is True
        store = PostgresProcessedEventStore(FakeDatabase(status="DELETE 0"))
        assert await store.release("evt_1") is False

    asyncio.run(scenario())


def test_command_tag_parsing() -> None:
    assert _affected("DELETE 3") == 3
    assert _affected("UPDATE 0") == 0
    assert _affected(None) == 0
