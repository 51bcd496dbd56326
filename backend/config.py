# config.py
# ============================================================================
# PAYMENT EVENT PIPELINE — CONFIGURATION
# ============================================================================
# Environment-driven settings for the ingestion path and the delivery queue
# ============================================================================

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@dataclass
class PipelineSettings:
    """Settings for signature checks, the analytics sink and delivery."""

    shared_secret: str = ""
    signature_tolerance_seconds: int = 300

    # Analytics sink
    analytics_enabled: bool = True
    sink_endpoint: str = "https://www.google-analytics.com"
    measurement_id: str = ""
    api_secret: str = ""
    sink_debug_mode: bool = False
    sink_timeout_seconds: float = 5.0

    # Retry / backoff
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2
    max_attempts: int = 3

    # Queue + rate limiting
    queue_capacity: int = 100
    max_events_per_second: Optional[int] = 10
    max_events_per_minute: Optional[int] = 100
    scan_interval_seconds: float = 1.0

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 30.0

    # Idempotency retention
    processed_event_ttl_seconds: int = 86400 * 7  # 7 days
    retention_interval_seconds: int = 3600

    # Optional collaborators
    database_url: Optional[str] = None
    stripe_api_key: Optional[str] = None

    environment: str = "development"

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            shared_secret=os.getenv("PROVIDER_WEBHOOK_SECRET", ""),
            signature_tolerance_seconds=int(os.getenv("SIGNATURE_TOLERANCE_SECONDS", "300")),
            analytics_enabled=os.getenv("ENABLE_ANALYTICS", "true").lower() != "false",
            sink_endpoint=os.getenv("ANALYTICS_SINK_URL", "https://www.google-analytics.com"),
            measurement_id=os.getenv("GA4_MEASUREMENT_ID", ""),
            api_secret=os.getenv("GA4_API_SECRET", ""),
            sink_debug_mode=_env_bool("ANALYTICS_DEBUG"),
            sink_timeout_seconds=float(os.getenv("ANALYTICS_TIMEOUT", "5.0")),
            base_delay_ms=int(os.getenv("DELIVERY_BASE_DELAY_MS", "1000")),
            backoff_multiplier=float(os.getenv("DELIVERY_BACKOFF_MULTIPLIER", "2")),
            max_attempts=int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3")),
            queue_capacity=int(os.getenv("DELIVERY_QUEUE_CAPACITY", "100")),
            max_events_per_second=_env_int("MAX_EVENTS_PER_SECOND", 10),
            max_events_per_minute=_env_int("MAX_EVENTS_PER_MINUTE", 100),
            scan_interval_seconds=float(os.getenv("DELIVERY_SCAN_INTERVAL", "1.0")),
            circuit_failure_threshold=int(os.getenv("CB_FAILURE_THRESHOLD", "5")),
            circuit_reset_seconds=float(os.getenv("CB_RESET_TIMEOUT_SECONDS", "30")),
            processed_event_ttl_seconds=int(os.getenv("PROCESSED_EVENT_TTL_SECONDS", str(86400 * 7))),
            retention_interval_seconds=int(os.getenv("RETENTION_INTERVAL", "3600")),
            database_url=os.getenv("DATABASE_URL") or None,
            stripe_api_key=os.getenv("STRIPE_SECRET_KEY") or None,
            environment=os.getenv("ENV", "development"),
        )

    @property
    def sink_enabled(self) -> bool:
        return bool(self.analytics_enabled and self.measurement_id and self.api_secret)

    def validate(self) -> Tuple[List[str], List[str]]:
        """Return (errors, warnings) for the current settings."""
        errors: List[str] = []
        warnings: List[str] = []

        if not self.shared_secret:
            errors.append("PROVIDER_WEBHOOK_SECRET is not configured")

        if not self.analytics_enabled:
            warnings.append("Analytics disabled via ENABLE_ANALYTICS=false (forwarding disabled)")
        else:
            if not self.measurement_id:
                warnings.append("GA4_MEASUREMENT_ID is not configured (analytics forwarding disabled)")
            elif not re.fullmatch(r"G-[A-Z0-9]{10}", self.measurement_id):
                warnings.append("GA4_MEASUREMENT_ID format is invalid (should be G-XXXXXXXXXX)")

            if not self.api_secret:
                warnings.append("GA4_API_SECRET is not configured (analytics forwarding disabled)")
            elif not re.fullmatch(r"[A-Za-z0-9_-]{20,}", self.api_secret):
                warnings.append("GA4_API_SECRET format appears invalid")

        if self.environment == "production" and self.sink_debug_mode:
            warnings.append("Debug mode is enabled in production environment")

        if self.max_attempts < 1:
            errors.append("DELIVERY_MAX_ATTEMPTS must be at least 1")
        if self.queue_capacity < 1:
            errors.append("DELIVERY_QUEUE_CAPACITY must be at least 1")

        return errors, warnings


# =============================================================================
# STRUCTURED LOGGING
# =============================================================================

def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog for JSON output."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
