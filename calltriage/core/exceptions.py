"""
CallTriage - Exception Hierarchy

Structured exceptions for consistent error handling across the webhook
pipeline. Every exception carries an error code and an HTTP status so the
dispatcher can turn it into an acknowledgment without inspecting types.
"""

from typing import Optional


class CallTriageError(Exception):
    """Base exception for all CallTriage errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Request Rejections
# =============================================================================

class AuthenticationFailure(CallTriageError):
    """Webhook signature or shared secret did not verify."""
    code = "AUTHENTICATION_FAILED"
    status_code = 401


class ValidationFailure(CallTriageError):
    """Webhook body could not be parsed into an event."""
    code = "VALIDATION_FAILED"
    status_code = 400


class TenantNotFound(CallTriageError):
    """
    No tenant could be resolved for an event.

    Carries only the identifiers that were tried and the per-strategy trail,
    never data belonging to any tenant.
    """
    code = "TENANT_NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        message: str,
        identifiers: Optional[dict] = None,
        attempts: Optional[list] = None,
    ):
        super().__init__(message, details={"identifiers": identifiers or {}})
        self.identifiers = identifiers or {}
        self.attempts = attempts or []


# =============================================================================
# Contained Failures
# =============================================================================

class ClassificationFailure(CallTriageError):
    """Urgency scoring failed; the caller degrades to a zero score."""
    code = "CLASSIFICATION_FAILED"
    status_code = 500


class DeliveryFailure(CallTriageError):
    """SMS gateway rejected or timed out a message."""
    code = "DELIVERY_FAILED"
    status_code = 502


class DatastoreError(CallTriageError):
    """Datastore read or write failed."""
    code = "DATASTORE_ERROR"
    status_code = 503


class AlertRecordingFailure(DatastoreError):
    """
    Alerts went out but their attempts could not be recorded.

    Carries the triage result and the attempts so the dispatcher can still
    write them to the event log.
    """
    code = "ALERT_RECORDING_FAILED"

    def __init__(self, message: str, triage=None, attempts: Optional[list] = None):
        super().__init__(message, details={"attempts": len(attempts or [])})
        self.triage = triage
        self.attempts = attempts or []


# =============================================================================
# Internal / Configuration
# =============================================================================

class InternalError(CallTriageError):
    """Unexpected failure while handling an event."""
    code = "INTERNAL_ERROR"
    status_code = 500


class ConfigurationError(CallTriageError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
