"""
Dead Letter Store
=================
Terminal failures kept for manual replay: outbound events that exhausted
their retries or were rejected by the sink, and notifications whose payload
could not be reconciled.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import List, Optional

import structlog

from schemas.event_definitions import DeadLetterEntry, OutboundEvent


class IDeadLetterStore(ABC):
    """Dead letter store interface"""

    @abstractmethod
    async def add(self, entry: DeadLetterEntry) -> None:
        pass

    @abstractmethod
    async def list(self, kind: Optional[str] = None, limit: int = 100) -> List[DeadLetterEntry]:
        pass

    @abstractmethod
    async def mark_replayed(self, entry_id: str) -> None:
        pass

    @abstractmethod
    async def get_stats(self) -> dict:
        pass


MAX_DEAD_LETTERS = 1000


class InMemoryDeadLetterStore(IDeadLetterStore):
    """Bounded; when full, replayed entries go first, then the oldest."""

    def __init__(self, max_entries: int = MAX_DEAD_LETTERS):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, DeadLetterEntry]" = OrderedDict()
        self._evicted = 0
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="dead_letters")

    async def add(self, entry: DeadLetterEntry) -> None:
        async with self._lock:
            self._entries[entry.entry_id] = entry
            evicted = self._evict()
        if evicted:
            self._logger.warning("dead_letters_evicted", count=evicted, max_entries=self.max_entries)
        self._logger.error(
            "dead_letter_recorded",
            entry_id=entry.entry_id,
            kind=entry.kind,
            reason=entry.reason,
            source_event_id=entry.source_event_id,
            **entry.context,
        )

    def _evict(self) -> int:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return 0
        replayed = [k for k, e in self._entries.items() if e.replayed][:overflow]
        for key in replayed:
            del self._entries[key]
        for _ in range(overflow - len(replayed)):
            self._entries.popitem(last=False)
        self._evicted += overflow
        return overflow

    async def list(self, kind: Optional[str] = None, limit: int = 100) -> List[DeadLetterEntry]:
        async with self._lock:
            entries = [
                e for e in self._entries.values()
                if not e.replayed and (kind is None or e.kind == kind)
            ]
            return entries[:limit]

    async def mark_replayed(self, entry_id: str) -> None:
        async with self._lock:
            if entry_id in self._entries:
                self._entries[entry_id].replayed = True

    async def get_stats(self) -> dict:
        async with self._lock:
            entries = list(self._entries.values())
            return {
                "total": len(entries),
                "pending": sum(1 for e in entries if not e.replayed),
                "replayed": sum(1 for e in entries if e.replayed),
                "delivery": sum(1 for e in entries if e.kind == "delivery"),
                "reconciliation": sum(1 for e in entries if e.kind == "reconciliation"),
                "evicted": self._evicted,
            }


def delivery_dead_letter(event: OutboundEvent, reason: str) -> DeadLetterEntry:
    return DeadLetterEntry(
        kind="delivery",
        reason=reason,
        event=event.model_copy(deep=True),
        context={
            "event_name": event.name,
            "client_id": event.client_id,
            "attempts": event.attempt,
            "last_error": event.last_error,
        },
    )
