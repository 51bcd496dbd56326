"""
Notification Processor
======================
One verify -> classify -> guard -> route call per inbound HTTP delivery.

    SignatureError               -> 400  (sender never retries)
    unknown type                 -> 200  ignored   (no processed record)
    duplicate event_id           -> 200  duplicate (no side effects)
    TransientProcessingError     -> 503  (claim released; sender redelivers)
    permanent / data error       -> 200  failed_permanent
    handled                      -> 200  processed | skipped | logged
"""

from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel, Field

from pipeline.errors import SignatureError, TransientProcessingError
from pipeline.idempotency import IdempotencyGuard
from pipeline.router import EventRouter
from pipeline.signature import SignatureVerifier
from schemas.event_definitions import GuardOutcome, ProcessingOutcome, UnknownNotification, classify


class ProcessingResult(BaseModel):
    status_code: int
    body: Dict[str, Any] = Field(default_factory=dict)


def _get_logger(correlation_id: Optional[str] = None):
    """Get logger with optional correlation ID"""
    log = structlog.get_logger().bind(component="notification_processor")
    if correlation_id:
        log = log.bind(correlation_id=correlation_id)
    return log


class NotificationProcessor:

    def __init__(self, verifier: SignatureVerifier, guard: IdempotencyGuard, router: EventRouter):
        self.verifier = verifier
        self.guard = guard
        self.router = router

    async def process(self, payload: bytes, signature_header: Optional[str]) -> ProcessingResult:
        try:
            event = self.verifier.verify(payload, signature_header)
        except SignatureError as e:
            _get_logger().warning("signature_rejected", reason=e.reason.value, error=str(e))
            return ProcessingResult(
                status_code=400,
                body={"error": "invalid_signature", "reason": e.reason.value},
            )

        log = _get_logger(event.correlation_id).bind(event_id=event.event_id, event_type=event.type)
        log.info("webhook_received")

        notification = classify(event)
        if isinstance(notification, UnknownNotification):
            log.info("event_type_ignored")
            return ProcessingResult(status_code=200, body={"received": True, "status": "ignored"})

        if await self.guard.check(event.event_id) == GuardOutcome.DUPLICATE:
            return ProcessingResult(status_code=200, body={"received": True, "status": "duplicate"})

        try:
            result = await self.router.route(notification)
        except TransientProcessingError as e:
            log.warning("transient_processing_error", error=str(e))
            await self.guard.release(event.event_id)
            return ProcessingResult(status_code=503, body={"error": "temporarily_unavailable"})
        except Exception:
            # unexpected errors release the claim too; the provider will redeliver
            await self.guard.release(event.event_id)
            raise

        if result is None:
            await self.guard.complete(event.event_id, ProcessingOutcome.SKIPPED)
            return ProcessingResult(status_code=200, body={"received": True, "status": "ignored"})

        await self.guard.complete(event.event_id, result.outcome)
        log.info("webhook_processed", outcome=result.outcome.value)
        return ProcessingResult(
            status_code=200,
            body={"received": True, "status": result.outcome.value, **result.detail},
        )
