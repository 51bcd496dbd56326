from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

from pipeline.measurement_sink import IEventSink
from pipeline.signature import sign_payload
from schemas.event_definitions import OutboundEvent

SECRET = "whsec_test_secret"


class FakeClock:
    """Float clock for the delivery path."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """Datetime clock for processed-event stores."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedSink(IEventSink):
    """Raises the scripted errors in order, then succeeds."""

    def __init__(self, script: list[Exception | None] | None = None, clock: Any = None) -> None:
        self.script = list(script or [])
        self.clock = clock
        self.sent: list[OutboundEvent] = []
        self.sent_at: list[float] = []
        self.closed = False

    async def send(self, event: OutboundEvent) -> None:
        self.sent.append(event)
        if self.clock is not None:
            self.sent_at.append(self.clock())
        if self.script:
            outcome = self.script.pop(0)
            if outcome is not None:
                raise outcome

    async def close(self) -> None:
        self.closed = True


def make_event(name: str = "page_view", **params: Any) -> OutboundEvent:
    return OutboundEvent(name=name, params=params, client_id="client-1")


def checkout_payload(event_id: str = "evt_1", **session_overrides: Any) -> dict:
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "payment_status": "paid",
        "amount_total": 5400,
        "currency": "usd",
        "customer": "cus_1",
        "client_reference_id": "ga-client-1",
        "mode": "payment",
        "payment_method_types": ["card"],
        "total_details": {"amount_tax": 400, "amount_shipping": 500},
        "metadata": {"analytics_session_id": "sess-1"},
        "line_items": {
            "data": [
                {
                    "description": "Harbor at Dusk",
                    "quantity": 1,
                    "amount_total": 4500,
                    "price": {"id": "price_1", "product": {"id": "prod_1", "name": "Harbor at Dusk"}},
                }
            ]
        },
    }
    session.update(session_overrides)
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": 1760000000,
        "data": {"object": session},
    }


def refund_payload(event_id: str = "evt_r1", **charge_overrides: Any) -> dict:
    charge = {
        "id": "ch_1",
        "object": "charge",
        "amount_refunded": 2000,
        "currency": "usd",
        "customer": "cus_1",
        "payment_intent": "pi_1",
        "metadata": {"checkout_session_id": "cs_test_1"},
    }
    charge.update(charge_overrides)
    return {"id": event_id, "type": "charge.refunded", "data": {"object": charge}}


def signed(body: dict, secret: str = SECRET, timestamp: int | None = None) -> tuple[bytes, str]:
    payload = json.dumps(body).encode()
    return payload, sign_payload(payload, secret, timestamp)
