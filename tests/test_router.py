from __future__ import annotations

import asyncio

import pytest

from pipeline.dead_letters import InMemoryDeadLetterStore
from pipeline.errors import (
    PermanentProcessingError,
    ReconciliationDataError,
    TransientProcessingError,
)
from pipeline.router import EventRouter, HandlerResult
from schemas.event_definitions import (
    CheckoutCompletedNotification,
    ProcessingOutcome,
    UnknownNotification,
    VerifiedEvent,
    classify,
)


def _event(event_type: str, event_id: str = "evt_1") -> VerifiedEvent:
    return VerifiedEvent(
        event_id=event_id,
        type=event_type,
        payload={"id": event_id, "type": event_type, "data": {"object": {"id": "obj_1"}}},
        signed_at=0,
    )


def test_classify_maps_known_and_unknown_types() -> None:
    assert isinstance(classify(_event("checkout.session.completed")), CheckoutCompletedNotification)
    assert classify(_event("charge.refunded")).kind == "charge_refunded"
    assert classify(_event("payment_intent.payment_failed")).kind == "payment_failed"
    assert isinstance(classify(_event("customer.created")), UnknownNotification)


def test_registered_handler_receives_notification() -> None:
    router = EventRouter()
    seen = []

    @router.register("checkout.session.completed")
    async def handle(notification):
        seen.append(notification.data_object["id"])
        return HandlerResult(detail={"ok": True})

    result = asyncio.run(router.route(classify(_event("checkout.session.completed"))))

    assert seen == ["obj_1"]
    assert result.outcome == ProcessingOutcome.PROCESSED
    assert router.supported_events == ["checkout.session.completed"]


def test_unknown_and_unhandled_types_are_not_dispatched() -> None:
    router = EventRouter()

    assert asyncio.run(router.route(classify(_event("customer.created")))) is None
    assert asyncio.run(router.route(classify(_event("charge.refunded")))) is None


def test_permanent_error_is_acknowledged() -> None:
    router = EventRouter()

    @router.register("charge.refunded")
    async def handle(notification):
        raise PermanentProcessingError("not applicable")

    result = asyncio.run(router.route(classify(_event("charge.refunded"))))

    assert result.outcome == ProcessingOutcome.FAILED_PERMANENT
    assert result.detail["error"] == "not applicable"


def test_reconciliation_data_error_is_dead_lettered() -> None:
    async def scenario() -> None:
        dead_letters = InMemoryDeadLetterStore()
        router = EventRouter(dead_letters=dead_letters)

        @router.register("checkout.session.completed")
        async def handle(notification):
            raise ReconciliationDataError(["amount_total"], event_id=notification.event.event_id)

        result = await router.route(classify(_event("checkout.session.completed", "evt_bad")))
        assert result.outcome == ProcessingOutcome.FAILED_PERMANENT

        entries = await dead_letters.list(kind="reconciliation")
        assert len(entries) == 1
        assert entries[0].source_event_id == "evt_bad"
        assert entries[0].context["missing"] == ["amount_total"]

    asyncio.run(scenario())


def test_transient_error_propagates() -> None:
    router = EventRouter()

    @router.register("checkout.session.completed")
    async def handle(notification):
        raise TransientProcessingError("lookup timed out")

    with pytest.raises(TransientProcessingError):
        asyncio.run(router.route(classify(_event("checkout.session.completed"))))
