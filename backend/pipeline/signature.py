"""
Signature Verifier
==================
Sole authentication boundary between the provider's network calls and the
rest of the pipeline. Pure: no state is touched before this returns.

Header format: ``t=<unix_ts>,v1=<hex_hmac>`` (``timestamp=``/``signature=``
are accepted as aliases). Several ``v1`` entries may be present during
secret rotation; any match is accepted.
"""

import hashlib
import hmac
import json
import time
from typing import Callable, List, Optional, Tuple

import structlog

from pipeline.errors import SignatureError, SignatureFailure
from schemas.event_definitions import VerifiedEvent

SIGNATURE_HEADER = "Provider-Signature"
DEFAULT_TOLERANCE_SECONDS = 300

_TIMESTAMP_KEYS = ("t", "timestamp")
_SIGNATURE_KEYS = ("v1", "signature")

logger = structlog.get_logger(component="signature_verifier")


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a header value the verifier accepts (replay tooling, tests)."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(payload, secret, ts)}"


def parse_signature_header(header: Optional[str]) -> Tuple[int, List[str]]:
    """Split a header into (timestamp, [signatures]) or raise Malformed."""
    if not header:
        raise SignatureError(SignatureFailure.MALFORMED, "missing signature header")

    timestamp = None
    signatures: List[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not value:
            raise SignatureError(SignatureFailure.MALFORMED, f"bad header segment: {part!r}")
        if key in _TIMESTAMP_KEYS:
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureError(SignatureFailure.MALFORMED, "timestamp is not an integer")
        elif key in _SIGNATURE_KEYS:
            signatures.append(value)
        # unknown schemes (e.g. v0) are ignored

    if timestamp is None:
        raise SignatureError(SignatureFailure.MALFORMED, "no timestamp in header")
    if not signatures:
        raise SignatureError(SignatureFailure.MALFORMED, "no signature in header")
    return timestamp, signatures


class SignatureVerifier:
    """Validates provenance and freshness of an inbound notification."""

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("shared secret is required for signature verification")
        self._secret = secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(self, payload: bytes, header: Optional[str]) -> VerifiedEvent:
        timestamp, signatures = parse_signature_header(header)

        now = self._clock()
        if abs(now - timestamp) > self.tolerance_seconds:
            logger.warning("signature_expired", timestamp=timestamp, skew=int(now - timestamp))
            raise SignatureError(SignatureFailure.EXPIRED, "timestamp outside tolerance window")

        expected = compute_signature(payload, self._secret, timestamp).encode()
        # bytes compare: header values may carry non-ASCII characters
        if not any(
            hmac.compare_digest(expected, candidate.encode("utf-8", "surrogateescape"))
            for candidate in signatures
        ):
            logger.warning("signature_mismatched", timestamp=timestamp)
            raise SignatureError(SignatureFailure.MISMATCHED, "no signature matches payload")

        return self._parse(payload, timestamp)

    @staticmethod
    def _parse(payload: bytes, timestamp: int) -> VerifiedEvent:
        try:
            body = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise SignatureError(SignatureFailure.MALFORMED, "payload is not valid JSON")

        if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
            raise SignatureError(SignatureFailure.MALFORMED, "payload lacks id or type")

        created = body.get("created")

        return VerifiedEvent(
            event_id=str(body["id"]),
            type=str(body["type"]),
            created=created if isinstance(created, int) and not isinstance(created, bool) else None,
            payload=body,
            signed_at=timestamp,
        )
