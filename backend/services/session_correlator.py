"""
Session Correlator
==================
Stable identifiers that let client-originated and server-originated events
about the same visit be joined downstream.
"""

import hashlib
import random
import string
import time
from typing import Callable, MutableMapping, Optional

import structlog

SESSION_STORAGE_KEY = "analytics_session_id"

_BASE36 = string.digits + string.ascii_lowercase

logger = structlog.get_logger(component="session_correlator")


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_session_id(clock: Callable[[], float] = time.time, rng: Optional[random.Random] = None) -> str:
    """base36(ms timestamp) + 9 random base36 chars."""
    rng = rng or random
    suffix = "".join(rng.choice(_BASE36) for _ in range(9))
    return to_base36(int(clock() * 1000)) + suffix


def derive_client_id(
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    fingerprint: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> str:
    """Client id for server-originated events that arrive without one."""
    if user_id:
        return f"user_{user_id}"
    if session_id:
        return f"session_{session_id}"
    if fingerprint:
        digest = hashlib.sha256(fingerprint.encode()).hexdigest()[:16]
        return f"generated_{digest}"
    rand = "".join(random.choice(_BASE36) for _ in range(9))
    return f"server_{int(clock() * 1000)}_{rand}"


class SessionCorrelator:
    """
    Lazily creates a session id on first use and keeps it in the caller's
    storage scope (a dict per process by default, or anything dict-like
    such as a per-user cookie jar). No expiry beyond the storage's own.
    """

    def __init__(
        self,
        storage: Optional[MutableMapping[str, str]] = None,
        key: str = SESSION_STORAGE_KEY,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage if storage is not None else {}
        self._key = key
        self._clock = clock

    def get_or_create(self) -> str:
        existing = self._storage.get(self._key)
        if existing:
            return existing
        session_id = new_session_id(self._clock)
        self._storage[self._key] = session_id
        logger.debug("session_created", session_id=session_id)
        return session_id

    @property
    def current(self) -> Optional[str]:
        return self._storage.get(self._key)

    def reset(self) -> None:
        self._storage.pop(self._key, None)
