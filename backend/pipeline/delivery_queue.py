"""
Outbound Delivery Queue
=======================
Buffers derived telemetry events and delivers them to the analytics sink.

Per-event state machine:
    Pending  --attempt-->            Sending
    Sending  --2xx-->                Success        (terminal)
    Sending  --network/timeout/5xx-> Pending        (attempt += 1, backoff)
    Sending  --429-->                Pending        (deferred by Retry-After, no attempt spent)
    Sending  --other 4xx-->          DeadLettered   (terminal, permanent)
    Sending  --unclassified error--> DeadLettered   (terminal, unexpected)
    Pending  --retries exhausted-->  DeadLettered   (terminal, exhausted)

``max_attempts`` is the retry budget: with the defaults an event gets one
first attempt and up to three retries, 1s / 2s / 4s after each failure.

Scheduling is single-threaded and cooperative. The scan loop owns every
mutation of the queue; each sink call is bounded by ``attempt_timeout``
and cancelled when it overruns. First attempts go out in enqueue order;
an event waiting out its backoff never blocks other eligible events.

The queue is memory-only: events still Pending at process exit are lost
(logged on stop).
"""

import asyncio
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

import structlog

from pipeline.circuit_breaker import CircuitBreaker
from pipeline.dead_letters import IDeadLetterStore, delivery_dead_letter
from pipeline.errors import (
    PermanentDeliveryError,
    QueueFullError,
    TransientDeliveryError,
)
from pipeline.measurement_sink import IEventSink
from pipeline.rate_limiter import SlidingWindowRateLimiter
from schemas.event_definitions import DeliveryAttempt, DeliveryState, OutboundEvent

RECENT_TERMINAL_LIMIT = 1000


class OutboundDeliveryQueue:

    def __init__(
        self,
        sink: IEventSink,
        capacity: int = 100,
        base_delay_ms: int = 1000,
        backoff_multiplier: float = 2,
        max_attempts: int = 3,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        dead_letters: Optional[IDeadLetterStore] = None,
        attempt_timeout: float = 5.0,
        scan_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
        online: bool = True,
        name: str = "server",
        on_dead_letter: Optional[Callable[[OutboundEvent, str], None]] = None,
    ):
        self.sink = sink
        self.capacity = capacity
        self.base_delay_ms = base_delay_ms
        self.backoff_multiplier = backoff_multiplier
        self.max_attempts = max_attempts
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.dead_letters = dead_letters
        self.attempt_timeout = attempt_timeout
        self.scan_interval = scan_interval
        self.on_dead_letter = on_dead_letter
        self._clock = clock
        self._online = online

        # QueueState: non-terminal events in enqueue order
        self._pending: "OrderedDict[str, OutboundEvent]" = OrderedDict()
        self._terminal: "OrderedDict[str, OutboundEvent]" = OrderedDict()
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._sequence = 0
        self._delivered = 0
        self._dead_lettered = 0
        self._deferred_until = 0.0

        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._logger = structlog.get_logger().bind(component="delivery_queue", queue=name)

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def size(self) -> int:
        return len(self._pending)

    @property
    def online(self) -> bool:
        return self._online

    def enqueue(self, event: OutboundEvent) -> OutboundEvent:
        """
        Add an event as Pending. Raises EventValidationError for events the
        sink would reject and QueueFullError at capacity (existing entries
        are kept; the new one is refused).
        """
        event.check_limits()

        if len(self._pending) >= self.capacity:
            self._logger.warning("enqueue_rejected_full", event_name=event.name, capacity=self.capacity)
            raise QueueFullError(f"delivery queue at capacity ({self.capacity})")

        now = self._clock()
        self._sequence += 1
        event.sequence = self._sequence
        event.enqueued_at = now
        event.next_eligible_at = now
        event.state = DeliveryState.PENDING
        self._pending[event.event_id] = event

        held = not self._online or (self.circuit_breaker is not None and self.circuit_breaker.is_blocking)
        self._logger.debug("event_enqueued", event_id=event.event_id, event_name=event.name,
                           size=len(self._pending), held=held)
        if not held:
            self._wake.set()
        return event

    def backoff_seconds(self, failures: int) -> float:
        """Delay before the retry that follows failure number ``failures`` (1-based)."""
        exponent = max(failures - 1, 0)
        return (self.base_delay_ms * (self.backoff_multiplier ** exponent)) / 1000.0

    # =========================================================================
    # CONNECTIVITY
    # =========================================================================

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        if online:
            self._logger.info("queue_online", pending=len(self._pending))
            self._wake.set()
        else:
            self._logger.info("queue_offline", pending=len(self._pending))

    # =========================================================================
    # SCAN
    # =========================================================================

    async def process_due(self) -> int:
        """One scan: retire exhausted events, then attempt every eligible one."""
        for event in list(self._pending.values()):
            if event.attempt > self.max_attempts:
                await self._dead_letter(event, "exhausted")

        if not self._online:
            return 0
        if self.circuit_breaker is not None and not await self.circuit_breaker.can_execute():
            return 0

        attempts = 0
        now = self._clock()
        for event in list(self._pending.values()):
            if event.event_id not in self._pending or event.next_eligible_at > now:
                continue

            if self.rate_limiter is not None and not self.rate_limiter.try_acquire():
                self._deferred_until = self.rate_limiter.next_available_at()
                self._logger.debug("delivery_deferred_rate_limit", pending=len(self._pending),
                                   resume_at=self._deferred_until)
                break

            await self._attempt(event)
            attempts += 1

            if not self._online:
                break
            if self.circuit_breaker is not None and self.circuit_breaker.is_blocking:
                break
        return attempts

    async def _attempt(self, event: OutboundEvent) -> None:
        event.state = DeliveryState.SENDING
        log = self._logger.bind(event_id=event.event_id, event_name=event.name)

        try:
            await asyncio.wait_for(self.sink.send(event), timeout=self.attempt_timeout)
        except asyncio.TimeoutError:
            await self._on_transient(event, TransientDeliveryError("delivery attempt timed out"), log)
        except TransientDeliveryError as e:
            await self._on_transient(event, e, log)
        except PermanentDeliveryError as e:
            event.attempt += 1
            event.last_error = str(e)
            event.history.append(DeliveryAttempt(
                attempt=event.attempt, at=self._clock(), outcome="permanent",
                error=str(e), status_code=e.status_code,
            ))
            if self.circuit_breaker is not None:
                await self.circuit_breaker.record_success()
            log.error("delivery_rejected", status_code=e.status_code, error=str(e))
            await self._dead_letter(event, "permanent")
        except Exception as e:
            # unclassified sink failure is terminal
            event.attempt += 1
            event.last_error = f"{type(e).__name__}: {e}"
            event.history.append(DeliveryAttempt(
                attempt=event.attempt, at=self._clock(), outcome="unexpected", error=event.last_error,
            ))
            log.exception("delivery_unexpected_error", error=event.last_error)
            await self._dead_letter(event, "unexpected")
        else:
            event.history.append(DeliveryAttempt(
                attempt=event.attempt + 1, at=self._clock(), outcome="success",
            ))
            if self.circuit_breaker is not None:
                await self.circuit_breaker.record_success()
            event.state = DeliveryState.SUCCESS
            self._delivered += 1
            log.info("event_delivered", retries=event.attempt)
            self._retire(event)

    async def _on_transient(self, event: OutboundEvent, error: TransientDeliveryError, log) -> None:
        now = self._clock()
        event.last_error = str(error)

        if error.is_rate_limited:
            delay = error.retry_after if error.retry_after is not None else self.backoff_seconds(1)
            event.history.append(DeliveryAttempt(
                attempt=event.attempt + 1, at=now, outcome="rate_limited",
                error=str(error), status_code=error.status_code,
            ))
            event.state = DeliveryState.PENDING
            event.next_eligible_at = now + delay
            log.warning("delivery_rate_limited", retry_in=delay)
            return

        event.attempt += 1
        event.history.append(DeliveryAttempt(
            attempt=event.attempt, at=now, outcome="transient",
            error=str(error), status_code=error.status_code,
        ))
        if self.circuit_breaker is not None:
            await self.circuit_breaker.record_failure(error)

        event.state = DeliveryState.PENDING
        if event.attempt > self.max_attempts:
            log.error("delivery_retries_exhausted", attempts=event.attempt, error=str(error))
            await self._dead_letter(event, "exhausted")
            return

        delay = self.backoff_seconds(event.attempt)
        event.next_eligible_at = now + delay
        log.warning("delivery_failed", attempt=event.attempt, retry_in=delay, error=str(error))

    async def _dead_letter(self, event: OutboundEvent, reason: str) -> None:
        event.state = DeliveryState.DEAD_LETTERED
        self._dead_lettered += 1
        self._retire(event)
        self._logger.error("event_dead_lettered", event_id=event.event_id, event_name=event.name,
                           reason=reason, attempts=event.attempt, last_error=event.last_error)
        if self.dead_letters is not None:
            await self.dead_letters.add(delivery_dead_letter(event, reason))
        if self.on_dead_letter is not None:
            self.on_dead_letter(event, reason)

    def _retire(self, event: OutboundEvent) -> None:
        self._pending.pop(event.event_id, None)
        self._terminal[event.event_id] = event
        while len(self._terminal) > RECENT_TERMINAL_LIMIT:
            self._terminal.popitem(last=False)
        for waiter in self._waiters.pop(event.event_id, []):
            if not waiter.done():
                waiter.set_result(event)

    # =========================================================================
    # RESULTS
    # =========================================================================

    def get(self, event_id: str) -> Optional[OutboundEvent]:
        return self._pending.get(event_id) or self._terminal.get(event_id)

    def pending_events(self) -> List[OutboundEvent]:
        return list(self._pending.values())

    async def wait_for(self, event_id: str, timeout: Optional[float] = None) -> OutboundEvent:
        """Resolve once the event reaches Success or DeadLettered."""
        if event_id in self._terminal:
            return self._terminal[event_id]
        if event_id not in self._pending:
            raise KeyError(event_id)
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(event_id, []).append(future)
        return await asyncio.wait_for(future, timeout=timeout)

    def stats(self) -> dict:
        by_state: Dict[str, int] = {}
        for event in self._pending.values():
            by_state[event.state.value] = by_state.get(event.state.value, 0) + 1
        return {
            "size": len(self._pending),
            "capacity": self.capacity,
            "online": self._online,
            "circuit": self.circuit_breaker.state.value if self.circuit_breaker else None,
            "by_state": by_state,
            "delivered": self._delivered,
            "dead_lettered": self._dead_lettered,
        }

    async def replay_dead_letters(self, limit: int = 100) -> int:
        """Re-enqueue dead-lettered deliveries as fresh events."""
        if self.dead_letters is None:
            return 0

        replayed = 0
        for entry in await self.dead_letters.list(kind="delivery", limit=limit):
            if entry.event is None:
                continue
            fresh = OutboundEvent(
                name=entry.event.name,
                params=dict(entry.event.params),
                batched=[b.model_copy(deep=True) for b in entry.event.batched],
                client_id=entry.event.client_id,
                session_id=entry.event.session_id,
                user_id=entry.event.user_id,
                user_properties=entry.event.user_properties,
            )
            try:
                self.enqueue(fresh)
            except QueueFullError:
                break
            await self.dead_letters.mark_replayed(entry.entry_id)
            replayed += 1

        self._logger.info("dead_letters_replayed", count=replayed)
        return replayed

    # =========================================================================
    # BACKGROUND LOOP
    # =========================================================================

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())
        self._logger.info("delivery_loop_started", scan_interval=self.scan_interval)

    def _next_wakeup(self) -> float:
        if not self._pending or not self._online:
            return self.scan_interval
        if self.circuit_breaker is not None and self.circuit_breaker.is_blocking:
            return self.scan_interval
        soonest = min(e.next_eligible_at for e in self._pending.values())
        soonest = max(soonest, self._deferred_until)
        return min(max(soonest - self._clock(), 0.01), self.scan_interval)

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.process_due()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("delivery_loop_error", error=str(e))

            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._next_wakeup())
            except asyncio.TimeoutError:
                pass

    async def stop(self, flush: bool = True, timeout: float = 5.0) -> None:
        """Stop the loop; optionally give due events one last pass."""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if flush and self._pending and self._online:
            try:
                await asyncio.wait_for(self.process_due(), timeout=timeout)
            except asyncio.TimeoutError:
                self._logger.warning("final_flush_timed_out", timeout=timeout)

        if self._pending:
            self._logger.warning("pending_events_lost", count=len(self._pending),
                                 event_ids=list(self._pending.keys())[:20])

        # callers blocked in wait_for see CancelledError
        for waiters in self._waiters.values():
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        self._waiters.clear()
        self._logger.info("delivery_loop_stopped", delivered=self._delivered,
                          dead_lettered=self._dead_lettered)
