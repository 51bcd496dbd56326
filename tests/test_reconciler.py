from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
import stripe

from pipeline.dead_letters import InMemoryDeadLetterStore
from pipeline.delivery_queue import OutboundDeliveryQueue
from pipeline.errors import ReconciliationDataError, TransientProcessingError
from pipeline.reconciler import (
    ILineItemLookup,
    InMemoryRecordRepository,
    OrderReconciler,
    StripeLineItemLookup,
    parse_line_items,
    to_major_units,
)
from pipeline.router import EventRouter
from schemas.event_definitions import (
    LineItem,
    ProcessingOutcome,
    PurchaseRecord,
    RefundRecord,
    VerifiedEvent,
    classify,
)
from support import FakeClock, ScriptedSink, checkout_payload, make_event, refund_payload


def _verified(body: dict) -> VerifiedEvent:
    return VerifiedEvent(event_id=body["id"], type=body["type"], payload=body, signed_at=0)


class StaticLookup(ILineItemLookup):
    def __init__(self, items=None, error: Exception | None = None) -> None:
        self.items = items or []
        self.error = error
        self.calls: list[str] = []

    async def fetch(self, session_id: str):
        self.calls.append(session_id)
        if self.error is not None:
            raise self.error
        return self.items


def _reconciler(capacity: int = 100, lookup: ILineItemLookup | None = None):
    dead_letters = InMemoryDeadLetterStore()
    queue = OutboundDeliveryQueue(ScriptedSink(), capacity=capacity, clock=FakeClock(), online=False)
    records = InMemoryRecordRepository()
    reconciler = OrderReconciler(records, queue=queue, line_items=lookup, dead_letters=dead_letters)
    return reconciler, records, queue, dead_letters


def test_paid_checkout_creates_record_and_one_purchase_event() -> None:
    async def scenario() -> None:
        reconciler, records, queue, _ = _reconciler()
        notification = classify(_verified(checkout_payload()))

        result = await reconciler.on_checkout_completed(notification)

        assert result.outcome == ProcessingOutcome.PROCESSED
        assert result.detail["record"] == "created"

        [record] = await records.list()
        assert isinstance(record, PurchaseRecord)
        assert record.transaction_id == "cs_test_1"
        assert record.total == 5400
        assert record.tax == 400
        assert record.shipping == 500
        assert record.coupon is None
        assert record.item_count == 1
        assert record.client_id == "ga-client-1"

        [event] = queue.pending_events()
        assert event.event_id == result.detail["outbound_event_id"]
        assert event.name == "purchase"
        assert event.client_id == "ga-client-1"
        assert event.session_id == "sess-1"
        assert event.user_id == "cus_1"
        assert event.params["value"] == 54.0
        assert event.params["currency"] == "USD"
        assert event.params["tax"] == 4.0
        assert event.params["shipping"] == 5.0
        assert event.params["items"] == [{
            "item_id": "prod_1",
            "item_name": "Harbor at Dusk",
            "price": 45.0,
            "quantity": 1,
            "item_category": "prints",
            "item_brand": "Print Store",
        }]
        assert event.user_properties == {"payment_method": "card", "session_mode": "payment"}

    asyncio.run(scenario())


def test_unpaid_checkout_is_skipped() -> None:
    async def scenario() -> None:
        reconciler, records, queue, _ = _reconciler()
        notification = classify(_verified(checkout_payload(payment_status="unpaid", amount_total=None)))

        result = await reconciler.on_checkout_completed(notification)

        assert result.outcome == ProcessingOutcome.SKIPPED
        assert await records.list() == []
        assert queue.size() == 0

    asyncio.run(scenario())


@pytest.mark.parametrize("missing", ["amount_total", "currency", "id"])
def test_missing_required_field_is_a_data_error(missing: str) -> None:
    reconciler, _, queue, _ = _reconciler()
    notification = classify(_verified(checkout_payload(**{missing: None})))

    with pytest.raises(ReconciliationDataError) as exc:
        asyncio.run(reconciler.on_checkout_completed(notification))

    assert exc.value.missing == [missing]
    assert exc.value.event_id == "evt_1"
    assert queue.size() == 0


def test_optional_fields_default_to_zero_or_absent() -> None:
    async def scenario() -> None:
        reconciler, records, queue, _ = _reconciler()
        body = checkout_payload(total_details=None, discounts=[{"promotion_code": "promo_SPRING"}])

        await reconciler.on_checkout_completed(classify(_verified(body)))

        [record] = await records.list()
        assert record.tax == 0
        assert record.shipping == 0
        assert record.coupon == "promo_SPRING"
        assert queue.pending_events()[0].params["coupon"] == "promo_SPRING"

    asyncio.run(scenario())


def test_zero_decimal_currency_is_not_divided() -> None:
    assert to_major_units(5400, "jpy") == 5400.0
    assert to_major_units(5400, "usd") == 54.0


def test_line_items_are_fetched_when_not_embedded() -> None:
    async def scenario() -> None:
        lookup = StaticLookup(items=[LineItem(item_id="prod_9", name="Fog", unit_price=1500, quantity=2)])
        reconciler, records, _, _ = _reconciler(lookup=lookup)

        await reconciler.on_checkout_completed(classify(_verified(checkout_payload(line_items=None))))

        assert lookup.calls == ["cs_test_1"]
        [record] = await records.list()
        assert record.item_count == 2

    asyncio.run(scenario())


def test_line_item_lookup_failure_is_transient() -> None:
    lookup = StaticLookup(error=TransientProcessingError("provider down"))
    reconciler, _, queue, _ = _reconciler(lookup=lookup)

    with pytest.raises(TransientProcessingError):
        asyncio.run(reconciler.on_checkout_completed(classify(_verified(checkout_payload(line_items=None)))))
    assert queue.size() == 0


def test_same_transaction_from_another_event_is_not_forwarded_twice() -> None:
    async def scenario() -> None:
        reconciler, records, queue, _ = _reconciler()

        await reconciler.on_checkout_completed(classify(_verified(checkout_payload("evt_1"))))
        second = await reconciler.on_checkout_completed(classify(_verified(checkout_payload("evt_2"))))

        assert second.detail["record"] == "existing"
        assert len(await records.list()) == 1
        assert queue.size() == 1

    asyncio.run(scenario())


def test_client_id_is_derived_when_not_supplied() -> None:
    async def scenario() -> None:
        reconciler, records, _, _ = _reconciler()
        await reconciler.on_checkout_completed(
            classify(_verified(checkout_payload(client_reference_id=None)))
        )
        [record] = await records.list()
        assert record.client_id == "user_cus_1"

    asyncio.run(scenario())


def test_refund_uses_checkout_session_as_transaction_id() -> None:
    async def scenario() -> None:
        reconciler, records, queue, _ = _reconciler()

        result = await reconciler.on_refund(classify(_verified(refund_payload())))

        assert result.outcome == ProcessingOutcome.PROCESSED
        [record] = await records.list()
        assert isinstance(record, RefundRecord)
        assert record.transaction_id == "cs_test_1"
        assert record.charge_id == "ch_1"
        assert record.total == 2000

        [event] = queue.pending_events()
        assert event.name == "refund"
        assert event.params == {"transaction_id": "cs_test_1", "value": 20.0, "currency": "USD"}

    asyncio.run(scenario())


def test_refund_falls_back_to_payment_intent() -> None:
    reconciler, _, _, _ = _reconciler()
    record = reconciler.build_refund_record(_verified(refund_payload(metadata={})))
    assert record.transaction_id == "pi_1"


def test_partial_refunds_are_each_recorded_once() -> None:
    async def scenario() -> None:
        reconciler, records, queue, _ = _reconciler()

        await reconciler.on_refund(classify(_verified(refund_payload("evt_r1", amount_refunded=1000))))
        await reconciler.on_refund(classify(_verified(refund_payload("evt_r2", amount_refunded=2000))))
        await reconciler.on_refund(classify(_verified(refund_payload("evt_r3", amount_refunded=2000))))

        assert len(await records.list()) == 2
        assert queue.size() == 2

    asyncio.run(scenario())


def test_refund_without_currency_is_a_data_error() -> None:
    reconciler, _, _, _ = _reconciler()
    with pytest.raises(ReconciliationDataError) as exc:
        reconciler.build_refund_record(_verified(refund_payload(currency=None)))
    assert exc.value.missing == ["currency"]


def test_payment_failed_is_logged_without_side_effects() -> None:
    async def scenario() -> None:
        reconciler, records, queue, _ = _reconciler()
        body = {
            "id": "evt_pf",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_2", "last_payment_error": {"code": "card_declined"}}},
        }

        result = await reconciler.on_payment_failed(classify(_verified(body)))

        assert result.outcome == ProcessingOutcome.LOGGED
        assert result.detail == {"error_code": "card_declined"}
        assert await records.list() == []
        assert queue.size() == 0

    asyncio.run(scenario())


def test_refused_enqueue_is_dead_lettered_and_record_kept() -> None:
    async def scenario() -> None:
        reconciler, records, queue, dead_letters = _reconciler(capacity=1)
        queue.enqueue(make_event("page_view"))

        result = await reconciler.on_checkout_completed(classify(_verified(checkout_payload())))

        assert result.outcome == ProcessingOutcome.PROCESSED
        assert result.detail["outbound_event_id"] is None
        assert len(await records.list()) == 1
        [entry] = await dead_letters.list(kind="delivery")
        assert entry.reason == "enqueue_refused"
        assert entry.event.name == "purchase"

    asyncio.run(scenario())


def test_register_wires_all_payment_handlers() -> None:
    reconciler, _, _, _ = _reconciler()
    router = EventRouter()
    reconciler.register(router)
    assert sorted(router.supported_events) == [
        "charge.refunded",
        "checkout.session.completed",
        "payment_intent.payment_failed",
    ]


def test_parse_line_items_handles_expanded_and_bare_products() -> None:
    items = parse_line_items([
        {"description": "Harbor", "quantity": 2, "amount_total": 9000,
         "price": {"id": "price_1", "product": {"id": "prod_1", "name": "Harbor Print"}}},
        {"description": "Fog", "quantity": 1, "amount_total": 3000,
         "price": {"id": "price_2", "product": "prod_2"}},
    ])

    assert items[0].item_id == "prod_1"
    assert items[0].name == "Harbor Print"
    assert items[0].unit_price == 4500
    assert items[1].item_id == "prod_2"
    assert items[1].name == "Fog"


def test_stripe_lookup_expands_products(monkeypatch) -> None:
    captured = {}

    def fake_list_line_items(session_id, **params):
        captured["session_id"] = session_id
        captured.update(params)
        return SimpleNamespace(data=[
            {"description": "Harbor", "quantity": 1, "amount_total": 4500,
             "price": {"id": "price_1", "product": {"id": "prod_1", "name": "Harbor"}}},
        ])

    monkeypatch.setattr(stripe.checkout.Session, "list_line_items", fake_list_line_items)

    items = asyncio.run(StripeLineItemLookup("sk_test").fetch("cs_test_1"))

    assert captured["session_id"] == "cs_test_1"
    assert captured["expand"] == ["data.price.product"]
    assert items[0].item_id == "prod_1"


def test_stripe_lookup_errors_are_transient(monkeypatch) -> None:
    def failing(session_id, **params):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "list_line_items", failing)

    with pytest.raises(TransientProcessingError):
        asyncio.run(StripeLineItemLookup("sk_test").fetch("cs_test_1"))


def test_unexpanded_price_id_is_used_as_item_id() -> None:
    [item] = parse_line_items([
        {"price": "price_1", "quantity": 2, "amount_total": 9000, "description": "Fog Over Pier"},
    ])
    assert (item.item_id, item.name, item.unit_price, item.quantity) == ("price_1", "Fog Over Pier", 4500, 2)


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"amount_total": "fifty"}, "amount_total"),
        ({"total_details": {"amount_tax": "n/a"}}, "amount_tax"),
        ({"currency": 840}, "currency"),
        ({"line_items": {"data": ["li_1"]}}, "line_items"),
    ],
)
def test_malformed_field_is_a_data_error(overrides: dict, field: str) -> None:
    reconciler, records, queue, _ = _reconciler()
    notification = classify(_verified(checkout_payload(**overrides)))

    with pytest.raises(ReconciliationDataError) as exc:
        asyncio.run(reconciler.on_checkout_completed(notification))

    assert exc.value.invalid == [field]
    assert queue.size() == 0


def test_non_object_metadata_is_ignored() -> None:
    async def scenario() -> None:
        reconciler, records, queue, _ = _reconciler()
        body = checkout_payload(metadata="legacy", discounts="promo_SPRING")

        result = await reconciler.on_checkout_completed(classify(_verified(body)))

        assert result.detail["record"] == "created"
        [event] = queue.pending_events()
        assert event.session_id is None
        assert "coupon" not in event.params

    asyncio.run(scenario())
