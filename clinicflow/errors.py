"""
Error taxonomy for the clinical workflow services.

Services raise these; the API layer renders them as
``{"detail": ..., "error": ...}`` with the matching status code.
"""

from __future__ import annotations


class ClinicflowError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "clinicflow_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ClinicflowError):
    """Malformed or empty submission – the caller must correct the input."""

    status_code = 400
    code = "validation_error"


class NotFoundError(ClinicflowError):
    status_code = 404
    code = "not_found"


class StateError(ClinicflowError):
    """Operation is invalid for the current lifecycle state."""

    status_code = 409
    code = "state_error"


class OtpCooldownError(StateError):
    """OTP resend attempted while the cooldown window is still active."""

    status_code = 429
    code = "otp_cooldown"

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class ConsentError(ClinicflowError):
    """OTP verification required but neither verified nor bypassed."""

    status_code = 403
    code = "consent_error"


class PersistenceError(ClinicflowError):
    """The backing store rejected a write. Safe to retry."""

    status_code = 503
    code = "persistence_error"
