"""
Error taxonomy for the hail intelligence core.

Fetch errors are split by whether a retry can help. Everything else is
scoped to the smallest unit it affects: a single decoded record, a single
storm event, or a single calibration week.
"""

from enum import Enum
from typing import Any, Dict, Optional


class FetchErrorType(Enum):
    """Types of source fetch errors."""
    AUTHENTICATION_ERROR = "authentication_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    TIMEOUT_ERROR = "timeout_error"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    VALIDATION_ERROR = "validation_error"
    CIRCUIT_OPEN = "circuit_open"


class HailFusionError(Exception):
    """Base exception for the hail intelligence core."""
    pass


class FetchError(HailFusionError):
    """A source adapter could not produce reports."""

    def __init__(self, message: str,
                 error_type: FetchErrorType = FetchErrorType.NETWORK_ERROR,
                 status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details or {}

    def __str__(self):
        return f"{self.error_type.value}: {self.message}"


class TransientFetchError(FetchError):
    """Network or timeout failure; retried with backoff."""
    pass


class PermanentFetchError(FetchError):
    """Auth or bad-request failure; the tier is marked degraded."""
    pass


class CircuitOpenError(FetchError):
    """The adapter is degraded and refused the call."""

    def __init__(self, message: str = "Circuit breaker is open"):
        super().__init__(message, error_type=FetchErrorType.CIRCUIT_OPEN)


class DataIntegrityError(HailFusionError):
    """A decoded record is malformed and must be discarded."""

    def __init__(self, message: str, source_ref: Optional[str] = None,
                 payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.source_ref = source_ref
        self.payload = payload or {}


class InsufficientCalibrationDataError(HailFusionError):
    """Too few ground-truth samples to calibrate this period."""

    def __init__(self, period_id: str, samples: int, required: int):
        super().__init__(
            f"Calibration period {period_id} has {samples} ground truth "
            f"samples, {required} required"
        )
        self.period_id = period_id
        self.samples = samples
        self.required = required


class ReconciliationError(HailFusionError):
    """Reconciling a report into a storm event failed."""

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.event_id = event_id


class ContourGenerationError(HailFusionError):
    """Contours could not be derived for a storm event."""

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.event_id = event_id


class StoreError(HailFusionError):
    """Intelligence store contract violation."""
    pass


class ImmutableFieldError(StoreError):
    """Attempted to rewrite a field that may only be set once."""
    pass
