"""
Pipeline error taxonomy.

Authentication failures never reach business logic. Only transient errors
are eligible for automatic retry; everything terminal is logged with enough
context to replay by hand.
"""

from enum import Enum
from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


# =============================================================================
# SIGNATURE VERIFICATION
# =============================================================================

class SignatureFailure(str, Enum):
    MALFORMED = "malformed"
    EXPIRED = "expired"
    MISMATCHED = "mismatched"


class SignatureError(PipelineError):
    """Inbound notification failed authentication. Never retried."""

    def __init__(self, reason: SignatureFailure, message: str = ""):
        self.reason = reason
        super().__init__(message or f"signature {reason.value}")


# =============================================================================
# HANDLER / RECONCILIATION
# =============================================================================

class ProcessingError(PipelineError):
    """A handler could not finish processing a verified event."""


class TransientProcessingError(ProcessingError):
    """Retrying later may succeed (dependency timeout, provider outage)."""


class PermanentProcessingError(ProcessingError):
    """Retrying will never help; the event is acknowledged."""


class ReconciliationDataError(PermanentProcessingError):
    """Required payload fields are missing or malformed. Operator-visible."""

    def __init__(self, missing: list, event_id: Optional[str] = None, invalid: Optional[list] = None):
        self.missing = list(missing)
        self.invalid = list(invalid or [])
        self.event_id = event_id
        problems = []
        if self.missing:
            problems.append(f"missing required fields: {', '.join(self.missing)}")
        if self.invalid:
            problems.append(f"malformed fields: {', '.join(self.invalid)}")
        super().__init__("; ".join(problems))


# =============================================================================
# OUTBOUND DELIVERY
# =============================================================================

class DeliveryError(PipelineError):
    """Sink delivery failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Network failure, timeout, sink 5xx or rate-limit response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code)

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class PermanentDeliveryError(DeliveryError):
    """Sink rejected the event (4xx other than 429). Dropped, never retried."""


class QueueFullError(PipelineError):
    """Enqueue rejected because the queue is at capacity."""


class EventValidationError(PipelineError, ValueError):
    """Outbound event violates the sink's naming or size limits."""
