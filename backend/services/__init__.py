# services/__init__.py
# ============================================================================
# PAYMENT EVENT PIPELINE — SERVICES MODULE
# ============================================================================
# Caller-side telemetry: session correlation and the tracking facade
# ============================================================================

from services.session_correlator import (
    SessionCorrelator,
    derive_client_id,
    new_session_id,
)

__all__ = [
    "SessionCorrelator",
    "derive_client_id",
    "new_session_id",
]
