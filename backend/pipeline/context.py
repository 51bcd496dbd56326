"""
Pipeline Context
================
Everything the ingestion path and the delivery loop share, built once at
process startup and handed to whoever needs it. There is no module-level
singleton; the FastAPI app keeps its context on ``app.state``.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from config import PipelineSettings
from database import Database
from pipeline.circuit_breaker import CircuitBreaker
from pipeline.dead_letters import IDeadLetterStore, InMemoryDeadLetterStore
from pipeline.delivery_queue import OutboundDeliveryQueue
from pipeline.idempotency import (
    IdempotencyGuard,
    InMemoryProcessedEventStore,
    IProcessedEventStore,
    PostgresProcessedEventStore,
)
from pipeline.ingestion import NotificationProcessor
from pipeline.measurement_sink import IEventSink, MeasurementProtocolSink
from pipeline.rate_limiter import SlidingWindowRateLimiter
from pipeline.reconciler import (
    ILineItemLookup,
    InMemoryRecordRepository,
    IRecordRepository,
    OrderReconciler,
    StripeLineItemLookup,
)
from pipeline.router import EventRouter
from pipeline.signature import SignatureVerifier
from tasks.retention import retention_loop

logger = structlog.get_logger(component="pipeline_context")


def build_delivery_queue(
    settings: PipelineSettings,
    sink: IEventSink,
    dead_letters: Optional[IDeadLetterStore] = None,
    clock: Callable[[], float] = time.time,
    name: str = "server",
) -> OutboundDeliveryQueue:
    """Queue wired with the configured backoff, rate limits and breaker."""
    return OutboundDeliveryQueue(
        sink=sink,
        capacity=settings.queue_capacity,
        base_delay_ms=settings.base_delay_ms,
        backoff_multiplier=settings.backoff_multiplier,
        max_attempts=settings.max_attempts,
        rate_limiter=SlidingWindowRateLimiter(
            max_per_second=settings.max_events_per_second,
            max_per_minute=settings.max_events_per_minute,
            clock=clock,
        ),
        circuit_breaker=CircuitBreaker(
            f"sink-{name}",
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_seconds,
            clock=clock,
        ),
        dead_letters=dead_letters,
        attempt_timeout=settings.sink_timeout_seconds,
        scan_interval=settings.scan_interval_seconds,
        clock=clock,
        name=name,
    )


@dataclass
class PipelineContext:
    settings: PipelineSettings
    processed_events: IProcessedEventStore
    dead_letters: IDeadLetterStore
    records: IRecordRepository
    router: EventRouter
    reconciler: OrderReconciler
    processor: NotificationProcessor
    queue: Optional[OutboundDeliveryQueue] = None
    sink: Optional[IEventSink] = None
    database: Optional[Database] = None
    _retention_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        settings: PipelineSettings,
        sink: Optional[IEventSink] = None,
        line_items: Optional[ILineItemLookup] = None,
        processed_events: Optional[IProcessedEventStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> "PipelineContext":
        database = None
        if processed_events is None:
            if settings.database_url:
                database = Database(settings.database_url)
                processed_events = PostgresProcessedEventStore(database)
            else:
                processed_events = InMemoryProcessedEventStore()

        dead_letters = InMemoryDeadLetterStore()
        records = InMemoryRecordRepository()

        if sink is None and settings.sink_enabled:
            sink = MeasurementProtocolSink(
                endpoint=settings.sink_endpoint,
                measurement_id=settings.measurement_id,
                api_secret=settings.api_secret,
                debug_mode=settings.sink_debug_mode,
                timeout_seconds=settings.sink_timeout_seconds,
            )
        if not settings.analytics_enabled:
            sink = None
        queue = build_delivery_queue(settings, sink, dead_letters, clock) if sink is not None else None
        if queue is None:
            logger.warning("analytics_forwarding_disabled", analytics_enabled=settings.analytics_enabled)

        if line_items is None and settings.stripe_api_key:
            line_items = StripeLineItemLookup(settings.stripe_api_key)

        router = EventRouter(dead_letters=dead_letters)
        reconciler = OrderReconciler(records, queue=queue, line_items=line_items, dead_letters=dead_letters)
        reconciler.register(router)

        processor = NotificationProcessor(
            verifier=SignatureVerifier(
                settings.shared_secret,
                tolerance_seconds=settings.signature_tolerance_seconds,
                clock=clock,
            ),
            guard=IdempotencyGuard(processed_events, ttl_seconds=settings.processed_event_ttl_seconds),
            router=router,
        )

        return cls(
            settings=settings,
            processed_events=processed_events,
            dead_letters=dead_letters,
            records=records,
            router=router,
            reconciler=reconciler,
            processor=processor,
            queue=queue,
            sink=sink,
            database=database,
        )

    async def start(self) -> None:
        if self.database is not None:
            await self.database.initialize()
        if self.queue is not None:
            self.queue.start()
        self._retention_task = asyncio.create_task(
            retention_loop(self.processed_events, self.settings.retention_interval_seconds)
        )
        logger.info("pipeline_started",
                    handlers=self.router.supported_events,
                    forwarding=self.queue is not None,
                    durable_idempotency=self.database is not None)

    async def stop(self, flush: bool = True) -> None:
        if self._retention_task is not None:
            self._retention_task.cancel()
            try:
                await self._retention_task
            except asyncio.CancelledError:
                pass
            self._retention_task = None
        if self.queue is not None:
            await self.queue.stop(flush=flush)
        if self.sink is not None:
            await self.sink.close()
        if self.database is not None:
            await self.database.close()
        logger.info("pipeline_stopped")
