"""
Sliding-window rate limiter for outbound deliveries.

Two ceilings apply at once (per second and per minute). A denied
acquire never drops work; the caller defers and asks again later.
"""

import time
from collections import deque
from typing import Callable, Deque, Optional


class SlidingWindowRateLimiter:

    def __init__(
        self,
        max_per_second: Optional[int] = None,
        max_per_minute: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_per_second = max_per_second
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._sent: Deque[float] = deque()

    def _trim(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= 60.0:
            self._sent.popleft()

    def _count_since(self, since: float) -> int:
        return sum(1 for ts in self._sent if ts > since)

    def try_acquire(self) -> bool:
        now = self._clock()
        self._trim(now)
        if self.max_per_minute is not None and len(self._sent) >= self.max_per_minute:
            return False
        if self.max_per_second is not None and self._count_since(now - 1.0) >= self.max_per_second:
            return False
        self._sent.append(now)
        return True

    def next_available_at(self) -> float:
        """Earliest clock time at which try_acquire could succeed."""
        now = self._clock()
        self._trim(now)
        candidates = [now]
        if self.max_per_minute is not None and len(self._sent) >= self.max_per_minute:
            candidates.append(self._sent[len(self._sent) - self.max_per_minute] + 60.0)
        if self.max_per_second is not None:
            recent = [ts for ts in self._sent if ts > now - 1.0]
            if len(recent) >= self.max_per_second:
                candidates.append(recent[len(recent) - self.max_per_second] + 1.0)
        return max(candidates)

    @property
    def in_flight_last_minute(self) -> int:
        self._trim(self._clock())
        return len(self._sent)
