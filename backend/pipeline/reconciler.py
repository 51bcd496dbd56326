"""
Order/Refund Reconciler
=======================
Turns payment-completed and refund-issued notifications into canonical
PurchaseRecord / RefundRecord objects, persists them write-once and
enqueues exactly one derived analytics event per new record.

Required fields missing or malformed -> ReconciliationDataError (permanent, dead-lettered)
Line-item lookup failing            -> TransientProcessingError (provider redelivers)

pip install pydantic stripe structlog
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Union

import stripe
import structlog
from pydantic import ValidationError

from pipeline.dead_letters import IDeadLetterStore, delivery_dead_letter
from pipeline.delivery_queue import OutboundDeliveryQueue
from pipeline.errors import (
    EventValidationError,
    QueueFullError,
    ReconciliationDataError,
    TransientProcessingError,
)
from pipeline.router import EventRouter, HandlerResult
from schemas.event_definitions import (
    ChargeRefundedNotification,
    CheckoutCompletedNotification,
    GA4EventName,
    LineItem,
    NotificationType,
    OutboundEvent,
    PaymentFailedNotification,
    ProcessingOutcome,
    PurchaseRecord,
    ReconciledRecord,
    RefundRecord,
    VerifiedEvent,
)
from services.session_correlator import derive_client_id

ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}


def to_major_units(amount: int, currency: str) -> float:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return float(amount)
    return amount / 100


# =============================================================================
# LINE ITEM LOOKUP (external provider / catalog collaborator)
# =============================================================================

class ILineItemLookup(ABC):

    @abstractmethod
    async def fetch(self, session_id: str) -> List[LineItem]:
        """Line items for a checkout session. Raise TransientProcessingError on failure."""
        pass


def parse_line_items(raw_items: List[Dict[str, Any]]) -> List[LineItem]:
    """Normalise provider line items (product may be expanded or a bare id)."""
    items = []
    for raw in raw_items:
        price = raw.get("price") or {}
        if not isinstance(price, dict):
            # unexpanded price: only its id is known
            price = {"id": price}
        product = price.get("product")
        if isinstance(product, dict):
            item_id = product.get("id") or "unknown"
            name = product.get("name") or raw.get("description") or "Unknown Product"
        else:
            item_id = product or price.get("id") or "unknown"
            name = raw.get("description") or "Unknown Product"

        quantity = raw.get("quantity") or 1
        line_total = raw.get("amount_total")
        if line_total is not None:
            unit_price = line_total // quantity
        else:
            unit_price = price.get("unit_amount") or 0

        items.append(LineItem(
            item_id=str(item_id),
            name=str(name),
            unit_price=int(unit_price),
            quantity=int(quantity),
        ))
    return items


class StripeLineItemLookup(ILineItemLookup):
    """Fetches line items with expanded products from the payment provider."""

    def __init__(self, api_key: str, timeout_seconds: float = 10.0):
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._logger = structlog.get_logger().bind(component="line_item_lookup")

    def _list_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        result = stripe.checkout.Session.list_line_items(
            session_id,
            api_key=self._api_key,
            expand=["data.price.product"],
        )
        return [item.to_dict() if hasattr(item, "to_dict") else dict(item) for item in result.data]

    async def fetch(self, session_id: str) -> List[LineItem]:
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._list_line_items, session_id),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            self._logger.warning("line_item_lookup_timeout", session_id=session_id)
            raise TransientProcessingError(f"line item lookup timed out for {session_id}") from e
        except stripe.StripeError as e:
            self._logger.warning("line_item_lookup_failed", session_id=session_id, error=str(e))
            raise TransientProcessingError(f"line item lookup failed: {e}") from e
        return parse_line_items(raw)


# =============================================================================
# RECORD REPOSITORY
# =============================================================================

def record_key(record: ReconciledRecord) -> str:
    if isinstance(record, RefundRecord):
        return f"refund:{record.charge_id or record.transaction_id}:{record.total}"
    return f"purchase:{record.transaction_id}"


class IRecordRepository(ABC):

    @abstractmethod
    async def save(self, record: ReconciledRecord) -> bool:
        """Write-once. False if a record with the same key already exists."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[ReconciledRecord]:
        pass

    @abstractmethod
    async def list(self) -> List[ReconciledRecord]:
        pass


class InMemoryRecordRepository(IRecordRepository):

    def __init__(self):
        self._records: Dict[str, ReconciledRecord] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: ReconciledRecord) -> bool:
        key = record_key(record)
        async with self._lock:
            if key in self._records:
                return False
            self._records[key] = record
            return True

    async def get(self, key: str) -> Optional[ReconciledRecord]:
        async with self._lock:
            return self._records.get(key)

    async def list(self) -> List[ReconciledRecord]:
        async with self._lock:
            return list(self._records.values())


# =============================================================================
# RECONCILER
# =============================================================================

def _require(obj: Dict[str, Any], fields: List[str], event_id: str) -> None:
    missing = [f for f in fields if obj.get(f) in (None, "")]
    if missing:
        raise ReconciliationDataError(missing, event_id=event_id)


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _amount(obj: Dict[str, Any], field: str, event_id: str, default: Optional[int] = None) -> int:
    value = obj.get(field)
    if value in (None, "") and default is not None:
        return default
    if isinstance(value, bool):
        raise ReconciliationDataError([], event_id=event_id, invalid=[field])
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ReconciliationDataError([], event_id=event_id, invalid=[field])


@contextmanager
def _invalid_fields(event_id: str):
    """Re-raise record validation failures as data errors naming the fields."""
    try:
        yield
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
        raise ReconciliationDataError([], event_id=event_id, invalid=fields)


class OrderReconciler:
    """
    Builds canonical records from provider payloads and hands a derived
    purchase/refund event to the delivery queue.
    """

    def __init__(
        self,
        records: IRecordRepository,
        queue: Optional[OutboundDeliveryQueue] = None,
        line_items: Optional[ILineItemLookup] = None,
        dead_letters: Optional[IDeadLetterStore] = None,
    ):
        self.records = records
        self.queue = queue
        self.line_items = line_items
        self.dead_letters = dead_letters
        self._logger = structlog.get_logger().bind(component="reconciler")

    def register(self, router: EventRouter) -> None:
        """Register all notification handlers"""

        @router.register(NotificationType.CHECKOUT_COMPLETED.value)
        async def handle_checkout_completed(notification: CheckoutCompletedNotification):
            return await self.on_checkout_completed(notification)

        @router.register(NotificationType.CHARGE_REFUNDED.value)
        async def handle_refund(notification: ChargeRefundedNotification):
            return await self.on_refund(notification)

        @router.register(NotificationType.PAYMENT_FAILED.value)
        async def handle_payment_failed(notification: PaymentFailedNotification):
            return await self.on_payment_failed(notification)

    # -------------------------------------------------------------------------
    # Record assembly
    # -------------------------------------------------------------------------

    async def build_purchase_record(self, event: VerifiedEvent) -> Optional[PurchaseRecord]:
        """None when the session is not paid (nothing to reconcile)."""
        session = event.data_object
        payment_status = session.get("payment_status")
        if payment_status is not None and payment_status != "paid":
            return None

        _require(session, ["id", "amount_total", "currency"], event.event_id)

        embedded = _mapping(session.get("line_items")).get("data")
        if embedded is not None:
            try:
                items = parse_line_items(embedded)
            except (AttributeError, TypeError, ValueError):
                raise ReconciliationDataError([], event_id=event.event_id, invalid=["line_items"])
        elif self.line_items is not None:
            items = await self.line_items.fetch(str(session["id"]))
        else:
            items = []

        totals = _mapping(session.get("total_details"))
        metadata = _mapping(session.get("metadata"))
        customer = session.get("customer")
        methods = session.get("payment_method_types")
        methods = methods if isinstance(methods, list) else []

        with _invalid_fields(event.event_id):
            return PurchaseRecord(
                transaction_id=session["id"],
                event_id=event.event_id,
                currency=session["currency"],
                total=_amount(session, "amount_total", event.event_id),
                tax=_amount(totals, "amount_tax", event.event_id, default=0),
                shipping=_amount(totals, "amount_shipping", event.event_id, default=0),
                coupon=_coupon_code(session),
                line_items=items,
                customer_id=customer,
                client_id=(
                    session.get("client_reference_id")
                    or metadata.get("analytics_client_id")
                    or derive_client_id(user_id=customer, session_id=metadata.get("analytics_session_id"))
                ),
                user_properties={
                    "payment_method": methods[0] if methods else "unknown",
                    "session_mode": session.get("mode"),
                },
            )

    def build_refund_record(self, event: VerifiedEvent) -> RefundRecord:
        charge = event.data_object
        metadata = _mapping(charge.get("metadata"))
        transaction_id = (
            metadata.get("checkout_session_id")
            or charge.get("payment_intent")
            or charge.get("id")
        )
        missing = [f for f in ("amount_refunded", "currency") if charge.get(f) in (None, "")]
        if not transaction_id:
            missing.insert(0, "transaction_id")
        if missing:
            raise ReconciliationDataError(missing, event_id=event.event_id)

        customer = charge.get("customer")
        with _invalid_fields(event.event_id):
            return RefundRecord(
                transaction_id=transaction_id,
                event_id=event.event_id,
                charge_id=charge.get("id"),
                currency=charge["currency"],
                total=_amount(charge, "amount_refunded", event.event_id),
                customer_id=customer,
                client_id=metadata.get("analytics_client_id") or derive_client_id(user_id=customer),
            )

    # -------------------------------------------------------------------------
    # Derived analytics events
    # -------------------------------------------------------------------------

    @staticmethod
    def _items_params(record: ReconciledRecord) -> List[Dict[str, Any]]:
        return [
            {
                "item_id": item.item_id,
                "item_name": item.name,
                "price": to_major_units(item.unit_price, record.currency),
                "quantity": item.quantity,
                "item_category": item.category,
                "item_brand": item.brand,
            }
            for item in record.line_items
        ]

    def purchase_event(self, record: PurchaseRecord, session_id: Optional[str] = None) -> OutboundEvent:
        params: Dict[str, Any] = {
            "transaction_id": record.transaction_id,
            "value": to_major_units(record.total, record.currency),
            "currency": record.currency.upper(),
            "tax": to_major_units(record.tax, record.currency),
            "shipping": to_major_units(record.shipping, record.currency),
            "items": self._items_params(record),
        }
        if record.coupon:
            params["coupon"] = record.coupon
        return OutboundEvent(
            name=GA4EventName.PURCHASE.value,
            params=params,
            client_id=record.client_id,
            session_id=session_id,
            user_id=record.customer_id,
            user_properties={k: v for k, v in record.user_properties.items() if v is not None},
        )

    def refund_event(self, record: RefundRecord) -> OutboundEvent:
        params: Dict[str, Any] = {
            "transaction_id": record.transaction_id,
            "value": to_major_units(record.total, record.currency),
            "currency": record.currency.upper(),
        }
        if record.line_items:
            params["items"] = self._items_params(record)
        return OutboundEvent(
            name=GA4EventName.REFUND.value,
            params=params,
            client_id=record.client_id,
            user_id=record.customer_id,
        )

    async def _forward(self, event: OutboundEvent, log) -> Optional[str]:
        """Best-effort enqueue; a refused event is dead-lettered for replay."""
        if self.queue is None:
            return None
        try:
            self.queue.enqueue(event)
            return event.event_id
        except (QueueFullError, EventValidationError) as e:
            log.error("analytics_enqueue_failed", event_name=event.name, error=str(e))
            if self.dead_letters is not None:
                event.last_error = str(e)
                await self.dead_letters.add(delivery_dead_letter(event, "enqueue_refused"))
            return None

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def on_checkout_completed(self, notification: CheckoutCompletedNotification) -> HandlerResult:
        event = notification.event
        log = self._logger.bind(event_id=event.event_id, correlation_id=event.correlation_id)

        record = await self.build_purchase_record(event)
        if record is None:
            log.info("checkout_not_paid", payment_status=notification.data_object.get("payment_status"))
            return HandlerResult(outcome=ProcessingOutcome.SKIPPED, detail={"reason": "not_paid"})

        created = await self.records.save(record)
        if not created:
            log.info("purchase_already_recorded", transaction_id=record.transaction_id)
            return HandlerResult(detail={"transaction_id": record.transaction_id, "record": "existing"})

        metadata = _mapping(notification.data_object.get("metadata"))
        outbound_id = await self._forward(
            self.purchase_event(record, session_id=metadata.get("analytics_session_id")), log
        )
        log.info("purchase_reconciled",
                 transaction_id=record.transaction_id,
                 total=record.total,
                 currency=record.currency,
                 items=len(record.line_items))
        return HandlerResult(detail={
            "transaction_id": record.transaction_id,
            "record": "created",
            "outbound_event_id": outbound_id,
        })

    async def on_refund(self, notification: ChargeRefundedNotification) -> HandlerResult:
        event = notification.event
        log = self._logger.bind(event_id=event.event_id, correlation_id=event.correlation_id)

        record = self.build_refund_record(event)
        created = await self.records.save(record)
        if not created:
            log.info("refund_already_recorded", transaction_id=record.transaction_id)
            return HandlerResult(detail={"transaction_id": record.transaction_id, "record": "existing"})

        outbound_id = await self._forward(self.refund_event(record), log)
        log.info("refund_reconciled",
                 transaction_id=record.transaction_id,
                 charge_id=record.charge_id,
                 amount_refunded=record.total)
        return HandlerResult(detail={
            "transaction_id": record.transaction_id,
            "record": "created",
            "outbound_event_id": outbound_id,
        })

    async def on_payment_failed(self, notification: PaymentFailedNotification) -> HandlerResult:
        payment_intent = notification.data_object
        error = _mapping(payment_intent.get("last_payment_error"))
        self._logger.warning("payment_failed",
                             event_id=notification.event.event_id,
                             payment_intent_id=payment_intent.get("id"),
                             error_code=error.get("code"),
                             decline_code=error.get("decline_code"))
        return HandlerResult(
            outcome=ProcessingOutcome.LOGGED,
            detail={"error_code": error.get("code")},
        )


def _coupon_code(session: Dict[str, Any]) -> Optional[str]:
    discounts = session.get("discounts")
    if not isinstance(discounts, list) or not discounts:
        return None
    first: Union[Dict[str, Any], str] = discounts[0]
    if isinstance(first, dict):
        return first.get("promotion_code") or first.get("coupon")
    return str(first)
