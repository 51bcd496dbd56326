"""
Event Router
============
Static mapping from notification type to handler.

Contract:
- unknown types are acknowledged and logged, never dispatched
- TransientProcessingError propagates (the HTTP boundary answers 5xx)
- PermanentProcessingError is logged and acknowledged; reconciliation data
  errors are also dead-lettered so an operator sees them
"""

from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, Field

from pipeline.dead_letters import IDeadLetterStore
from pipeline.errors import PermanentProcessingError, ReconciliationDataError
from schemas.event_definitions import (
    DeadLetterEntry,
    Notification,
    ProcessingOutcome,
    UnknownNotification,
)


class HandlerResult(BaseModel):
    outcome: ProcessingOutcome = ProcessingOutcome.PROCESSED
    detail: Dict[str, Any] = Field(default_factory=dict)


NotificationHandler = Callable[[Notification], Awaitable[HandlerResult]]


class EventRouter:
    """Maps a verified notification's type to its handler."""

    def __init__(self, dead_letters: Optional[IDeadLetterStore] = None):
        self._handlers: Dict[str, NotificationHandler] = {}
        self._dead_letters = dead_letters
        self._logger = structlog.get_logger().bind(component="event_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: NotificationHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def handles(self, notification: Notification) -> bool:
        if isinstance(notification, UnknownNotification):
            return False
        return notification.event.type in self._handlers

    async def route(self, notification: Notification) -> Optional[HandlerResult]:
        """Dispatch to the handler. None means acknowledged-and-ignored."""
        event = notification.event
        log = self._logger.bind(event_id=event.event_id, event_type=event.type)

        if not self.handles(notification):
            log.info("unhandled_event_type")
            return None

        handler = self._handlers[event.type]
        try:
            return await handler(notification)
        except PermanentProcessingError as e:
            if isinstance(e, ReconciliationDataError):
                log.error("reconciliation_data_error", missing=e.missing, invalid=e.invalid, error=str(e))
                if self._dead_letters is not None:
                    await self._dead_letters.add(DeadLetterEntry(
                        kind="reconciliation",
                        reason=str(e),
                        source_event_id=event.event_id,
                        context={"event_type": event.type, "missing": e.missing, "invalid": e.invalid},
                    ))
            else:
                log.warning("permanent_processing_error", error=str(e))
            return HandlerResult(
                outcome=ProcessingOutcome.FAILED_PERMANENT,
                detail={"error": str(e)},
            )

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())
