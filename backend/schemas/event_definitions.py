# schemas/event_definitions.py
# ============================================================================
# PAYMENT EVENT PIPELINE — EVENT SCHEMAS
# ============================================================================
# Purpose: Typed records flowing through verify -> guard -> route -> reconcile
#          -> deliver, plus the tagged union over provider notification types
# ============================================================================

import json
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from pipeline.errors import EventValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class NotificationType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHARGE_REFUNDED = "charge.refunded"
    PAYMENT_FAILED = "payment_intent.payment_failed"


class GuardOutcome(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


class ProcessingOutcome(str, Enum):
    """Stored on the ProcessedEventRecord once a claim is settled."""
    PROCESSING = "processing"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    LOGGED = "logged"
    FAILED_PERMANENT = "failed_permanent"


class DeliveryState(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SUCCESS = "success"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.SUCCESS, DeliveryState.DEAD_LETTERED)


class GA4EventName(str, Enum):
    VIEW_ITEM = "view_item"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    BEGIN_CHECKOUT = "begin_checkout"
    PURCHASE = "purchase"
    REFUND = "refund"
    LOGIN = "login"
    SIGN_UP = "sign_up"
    GENERATE_LEAD = "generate_lead"
    PAGE_VIEW = "page_view"


# ============================================================================
# SECTION 2: INBOUND
# ============================================================================

class VerifiedEvent(BaseModel):
    """Notification content once the signature has been checked."""
    model_config = ConfigDict(frozen=True)

    event_id: str
    type: str
    created: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    signed_at: int

    @property
    def data_object(self) -> Dict[str, Any]:
        data = self.payload.get("data")
        if not isinstance(data, dict):
            return {}
        obj = data.get("object")
        return obj if isinstance(obj, dict) else {}

    @property
    def correlation_id(self) -> str:
        metadata = self.data_object.get("metadata")
        if not isinstance(metadata, dict):
            return self.event_id
        return str(metadata.get("correlation_id") or self.event_id)


class ProcessedEventRecord(BaseModel):
    """Written once per distinct event_id by the idempotency guard."""
    event_id: str
    processed_at: datetime = Field(default_factory=utcnow)
    outcome: ProcessingOutcome = ProcessingOutcome.PROCESSING
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


# --- Tagged union over known notification types ---

class _NotificationBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: VerifiedEvent

    @property
    def data_object(self) -> Dict[str, Any]:
        return self.event.data_object


class CheckoutCompletedNotification(_NotificationBase):
    kind: Literal["checkout_completed"] = "checkout_completed"


class ChargeRefundedNotification(_NotificationBase):
    kind: Literal["charge_refunded"] = "charge_refunded"


class PaymentFailedNotification(_NotificationBase):
    kind: Literal["payment_failed"] = "payment_failed"


class UnknownNotification(_NotificationBase):
    """Acknowledged, never dispatched, never recorded."""
    kind: Literal["unknown"] = "unknown"


Notification = Union[
    CheckoutCompletedNotification,
    ChargeRefundedNotification,
    PaymentFailedNotification,
    UnknownNotification,
]

_VARIANTS = {
    NotificationType.CHECKOUT_COMPLETED.value: CheckoutCompletedNotification,
    NotificationType.CHARGE_REFUNDED.value: ChargeRefundedNotification,
    NotificationType.PAYMENT_FAILED.value: PaymentFailedNotification,
}


def classify(event: VerifiedEvent) -> Notification:
    """Map a verified event onto its variant; unrecognised types become Unknown."""
    variant = _VARIANTS.get(event.type, UnknownNotification)
    return variant(event=event)


# ============================================================================
# SECTION 3: RECONCILIATION RECORDS
# ============================================================================

class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    name: str
    unit_price: int  # minor units
    quantity: int = 1
    category: str = "prints"
    brand: str = "Print Store"


class _ReconciledRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    event_id: str
    currency: str
    total: int  # minor units
    line_items: List[LineItem] = Field(default_factory=list)
    customer_id: Optional[str] = None
    client_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class PurchaseRecord(_ReconciledRecord):
    tax: int = 0
    shipping: int = 0
    coupon: Optional[str] = None
    user_properties: Dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.line_items)


class RefundRecord(_ReconciledRecord):
    charge_id: Optional[str] = None


ReconciledRecord = Union[PurchaseRecord, RefundRecord]


# ============================================================================
# SECTION 4: OUTBOUND DELIVERY
# ============================================================================

MAX_EVENT_NAME_LENGTH = 40
MAX_PARAMETER_NAME_LENGTH = 40
MAX_PARAMETER_VALUE_LENGTH = 500
MAX_PARAMETERS_PER_EVENT = 25
MAX_EVENTS_PER_REQUEST = 25


class DeliveryAttempt(BaseModel):
    attempt: int
    at: float
    outcome: Literal["success", "transient", "rate_limited", "permanent", "unexpected"]
    error: Optional[str] = None
    status_code: Optional[int] = None


class BatchedEvent(BaseModel):
    """Extra event carried in the same sink request as its OutboundEvent."""
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)


def _event_problems(name: str, params: Dict[str, Any]) -> List[str]:
    problems = []
    if not name or not name[0].isalpha():
        problems.append(f"event name {name!r} must start with a letter")
    if len(name) > MAX_EVENT_NAME_LENGTH:
        problems.append(f"event name longer than {MAX_EVENT_NAME_LENGTH}")
    if len(params) > MAX_PARAMETERS_PER_EVENT:
        problems.append(f"more than {MAX_PARAMETERS_PER_EVENT} params")
    for key, value in params.items():
        if len(key) > MAX_PARAMETER_NAME_LENGTH:
            problems.append(f"param name {key[:16]}... longer than {MAX_PARAMETER_NAME_LENGTH}")
        if isinstance(value, str) and len(value) > MAX_PARAMETER_VALUE_LENGTH:
            problems.append(f"param {key} value longer than {MAX_PARAMETER_VALUE_LENGTH}")
    try:
        json.dumps(params, allow_nan=False)
    except (TypeError, ValueError) as e:
        problems.append(f"params of {name!r} are not JSON-serializable: {e}")
    return problems


class OutboundEvent(BaseModel):
    """
    Derived telemetry event. Mutated only by the delivery queue.

    ``batched`` events travel in the same sink request and share this
    event's delivery state (one request, one outcome).
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)
    batched: List[BatchedEvent] = Field(default_factory=list)
    client_id: str
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_properties: Optional[Dict[str, Any]] = None
    enqueued_at: float = Field(default_factory=time.time)
    sequence: int = 0

    # Scheduling (queue-owned)
    attempt: int = 0
    next_eligible_at: float = 0.0
    state: DeliveryState = DeliveryState.PENDING
    history: List[DeliveryAttempt] = Field(default_factory=list)
    last_error: Optional[str] = None

    @computed_field
    @property
    def failed_attempts(self) -> int:
        return sum(1 for h in self.history if h.outcome in ("transient", "permanent", "unexpected"))

    def check_limits(self) -> None:
        """Raise EventValidationError if the sink would reject this event."""
        problems = []
        if 1 + len(self.batched) > MAX_EVENTS_PER_REQUEST:
            problems.append(f"more than {MAX_EVENTS_PER_REQUEST} events in one request")
        for name, params in self.event_list():
            problems.extend(_event_problems(name, params))
        if problems:
            raise EventValidationError("; ".join(problems))

    def event_list(self) -> List[tuple]:
        return [(self.name, self.params)] + [(b.name, b.params) for b in self.batched]

    def to_sink_payload(self) -> Dict[str, Any]:
        """Measurement Protocol body: this event plus any batched ones."""
        body: Dict[str, Any] = {
            "client_id": self.client_id,
            "timestamp_micros": int(self.enqueued_at * 1_000_000),
            "events": [{"name": name, "params": params} for name, params in self.event_list()],
        }
        if self.user_id:
            body["user_id"] = self.user_id
        if self.user_properties:
            body["user_properties"] = {
                key: {"value": value} for key, value in self.user_properties.items()
            }
        return body


class DeadLetterEntry(BaseModel):
    """Terminal failure kept for manual replay."""
    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["delivery", "reconciliation"]
    reason: str
    created_at: datetime = Field(default_factory=utcnow)
    event: Optional[OutboundEvent] = None
    source_event_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    replayed: bool = False
