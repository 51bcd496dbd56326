"""
Circuit breaker for the analytics sink.

While OPEN the sink is treated as persistently unreachable: the delivery
queue keeps events Pending and stops attempting until the reset timeout
lets a single HALF_OPEN probe through.

Carried over from the event-bus adapter's broker breaker, with an
injectable clock and ``is_blocking`` added for the delivery scheduler.
"""

import asyncio
import time
from enum import Enum
from typing import Callable, Optional

import structlog


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker for connection resilience"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_blocking(self) -> bool:
        """OPEN and still inside the reset window."""
        if self._state != CircuitState.OPEN:
            return False
        if self._last_failure_time is None:
            return False
        return (self._clock() - self._last_failure_time) < self.reset_timeout

    async def can_execute(self) -> bool:
        """Check if circuit allows execution"""
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time is not None:
                    elapsed = self._clock() - self._last_failure_time
                    if elapsed >= self.reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._logger.info("circuit_half_open", elapsed=elapsed)
                        return True
                return False

            # HALF_OPEN: allow one request
            return True

    async def record_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failures = 0
                self._logger.info("circuit_closed")
            elif self._state == CircuitState.CLOSED:
                self._failures = 0

    async def record_failure(self, error: Exception = None):
        async with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._failures >= self.failure_threshold and self._state != CircuitState.OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))
