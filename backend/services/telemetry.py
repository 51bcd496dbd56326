"""
Telemetry Client
================
Caller-side facade over its own OutboundDeliveryQueue. Every event carries
the correlator's session id so it can be joined with server-originated
purchase/refund events downstream.

Usage:
    client = TelemetryClient(queue, SessionCorrelator(), client_id="123.456")
    client.start()
    client.track_add_to_cart([{"id": "print-1", "name": "Harbor", "price": 45.0}])
    client.set_online(False)   # events stay Pending until back online

With ``error_tracking`` on, refused and dead-lettered events are reported
back as ``analytics_error`` events. ``enabled=False`` turns every call
into a no-op (the ENABLE_ANALYTICS kill switch).
"""

import json
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from pipeline.delivery_queue import OutboundDeliveryQueue
from pipeline.errors import EventValidationError, QueueFullError
from schemas.event_definitions import (
    MAX_EVENTS_PER_REQUEST,
    MAX_PARAMETER_VALUE_LENGTH,
    BatchedEvent,
    GA4EventName,
    OutboundEvent,
)
from services.session_correlator import SessionCorrelator, derive_client_id

ERROR_EVENT_NAME = "analytics_error"


def format_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Catalog item -> GA4 item params."""
    return {
        "item_id": str(item.get("id") or item.get("item_id") or "unknown"),
        "item_name": item.get("name") or item.get("title") or "Unknown Product",
        "price": item.get("price") or item.get("base_price") or 0,
        "quantity": item.get("quantity") or 1,
        "item_category": item.get("category") or "prints",
        "item_brand": "Print Store",
    }


def _cart_value(items: List[Dict[str, Any]]) -> float:
    return sum(i["price"] * i["quantity"] for i in items)


def _compact(params: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


class TelemetryClient:

    def __init__(
        self,
        queue: OutboundDeliveryQueue,
        correlator: Optional[SessionCorrelator] = None,
        client_id: Optional[str] = None,
        user_id: Optional[str] = None,
        page_url: Optional[str] = None,
        currency: str = "USD",
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
        error_tracking: bool = True,
    ):
        self.queue = queue
        self.enabled = enabled
        self.error_tracking = error_tracking
        self.correlator = correlator or SessionCorrelator()
        self.user_id = user_id
        self.page_url = page_url
        self.currency = currency
        self._clock = clock
        self.client_id = client_id or derive_client_id(
            user_id=user_id, session_id=self.correlator.get_or_create(), clock=clock
        )
        self._logger = structlog.get_logger().bind(component="telemetry_client")
        if error_tracking:
            queue.on_dead_letter = self._on_dead_letter

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        self.queue.start()

    async def stop(self, flush: bool = True) -> None:
        await self.queue.stop(flush=flush)

    def set_online(self, online: bool) -> None:
        """Mirror connectivity changes; offline events wait as Pending."""
        self.queue.set_online(online)

    # =========================================================================
    # CORE
    # =========================================================================

    def _enrich(
        self,
        params: Optional[Dict[str, Any]],
        session_id: str,
        page_url: Optional[str] = None,
        page_referrer: Optional[str] = None,
    ) -> Dict[str, Any]:
        enriched = _compact(dict(params or {}))
        enriched["session_id"] = session_id
        enriched["timestamp"] = int(self._clock() * 1000)
        url = page_url or self.page_url
        if url:
            enriched["page_url"] = url
            enriched["page_referrer"] = page_referrer or "direct"
        return enriched

    def _enqueue(self, event: OutboundEvent) -> Optional[OutboundEvent]:
        try:
            return self.queue.enqueue(event)
        except QueueFullError as e:
            self._logger.warning("telemetry_event_dropped", event_name=event.name, error=str(e))
            return None
        except EventValidationError as e:
            self._logger.error("telemetry_event_invalid", event_name=event.name, error=str(e))
            if event.name != ERROR_EVENT_NAME:
                self.report_error("EVENT_INVALID", str(e), {"event_name": event.name})
            return None

    def track_event(
        self,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        page_url: Optional[str] = None,
        page_referrer: Optional[str] = None,
        user_properties: Optional[Dict[str, Any]] = None,
    ) -> Optional[OutboundEvent]:
        """Enrich and enqueue. None when disabled or the queue refused the event."""
        if not self.enabled:
            return None
        session_id = self.correlator.get_or_create()
        return self._enqueue(OutboundEvent(
            name=name,
            params=self._enrich(params, session_id, page_url, page_referrer),
            client_id=self.client_id,
            session_id=session_id,
            user_id=self.user_id,
            user_properties=user_properties,
        ))

    def track_batch(self, events: Iterable[Tuple[str, Dict[str, Any]]]) -> List[OutboundEvent]:
        """Send events together, up to MAX_EVENTS_PER_REQUEST per sink request."""
        if not self.enabled:
            return []
        session_id = self.correlator.get_or_create()
        enriched = [(name, self._enrich(params, session_id)) for name, params in events]

        tracked = []
        for start in range(0, len(enriched), MAX_EVENTS_PER_REQUEST):
            chunk = enriched[start:start + MAX_EVENTS_PER_REQUEST]
            (name, params), rest = chunk[0], chunk[1:]
            event = self._enqueue(OutboundEvent(
                name=name,
                params=params,
                batched=[BatchedEvent(name=n, params=p) for n, p in rest],
                client_id=self.client_id,
                session_id=session_id,
                user_id=self.user_id,
            ))
            if event is not None:
                tracked.append(event)
        return tracked

    def report_error(
        self, code: str, message: str, context: Optional[Dict[str, Any]] = None
    ) -> Optional[OutboundEvent]:
        """Log an analytics failure and, with error tracking on, send it as an event."""
        self._logger.error("analytics_error", error_code=code, error_message=message)
        if not self.error_tracking:
            return None
        return self.track_event(ERROR_EVENT_NAME, {
            "error_code": code,
            "error_message": message[:MAX_PARAMETER_VALUE_LENGTH],
            "error_timestamp": int(self._clock() * 1000),
            "error_context": json.dumps(context or {}, default=str)[:MAX_PARAMETER_VALUE_LENGTH],
        })

    def _on_dead_letter(self, event: OutboundEvent, reason: str) -> None:
        if event.name == ERROR_EVENT_NAME:
            return
        self.report_error(
            "MAX_RETRIES_EXCEEDED" if reason == "exhausted" else "EVENT_SEND_ERROR",
            event.last_error or reason,
            {"event_name": event.name, "reason": reason, "attempts": event.attempt},
        )

    def track_custom_event(self, name: str, **params: Any) -> Optional[OutboundEvent]:
        return self.track_event(name, params)

    def track_page_view(
        self,
        page_title: str,
        page_location: Optional[str] = None,
        page_referrer: Optional[str] = None,
    ) -> Optional[OutboundEvent]:
        return self.track_event(GA4EventName.PAGE_VIEW.value, {
            "page_title": page_title,
            "page_location": page_location or self.page_url,
            "page_referrer": page_referrer,
        })

    # =========================================================================
    # ECOMMERCE
    # =========================================================================

    def track_view_item(self, item: Dict[str, Any]) -> Optional[OutboundEvent]:
        formatted = format_item(item)
        return self.track_event(GA4EventName.VIEW_ITEM.value, {
            "currency": self.currency,
            "value": formatted["price"],
            "items": [formatted],
        })

    def track_add_to_cart(self, items: List[Dict[str, Any]]) -> Optional[OutboundEvent]:
        formatted = [format_item(i) for i in items]
        return self.track_event(GA4EventName.ADD_TO_CART.value, {
            "currency": self.currency,
            "value": _cart_value(formatted),
            "items": formatted,
        })

    def track_remove_from_cart(self, items: List[Dict[str, Any]]) -> Optional[OutboundEvent]:
        formatted = [format_item(i) for i in items]
        return self.track_event(GA4EventName.REMOVE_FROM_CART.value, {
            "currency": self.currency,
            "value": _cart_value(formatted),
            "items": formatted,
        })

    def track_begin_checkout(
        self, items: List[Dict[str, Any]], coupon: Optional[str] = None
    ) -> Optional[OutboundEvent]:
        formatted = [format_item(i) for i in items]
        return self.track_event(GA4EventName.BEGIN_CHECKOUT.value, {
            "currency": self.currency,
            "value": _cart_value(formatted),
            "items": formatted,
            "coupon": coupon,
        })

    # =========================================================================
    # ACCOUNT / LEADS
    # =========================================================================

    def track_lead(
        self, lead_type: str, source: str, value: Optional[float] = None
    ) -> Optional[OutboundEvent]:
        return self.track_event(GA4EventName.GENERATE_LEAD.value, {
            "lead_type": lead_type,
            "source": source,
            "value": value,
            "currency": self.currency if value else None,
        })

    def track_sign_up(self, method: str = "email") -> Optional[OutboundEvent]:
        return self.track_event(GA4EventName.SIGN_UP.value, {"method": method})

    def track_login(self, method: str = "email") -> Optional[OutboundEvent]:
        return self.track_event(GA4EventName.LOGIN.value, {"method": method})
