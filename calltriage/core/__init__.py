"""
CallTriage - Core Package

Contains the dispatcher, datastore access and domain types:
- dispatcher: Webhook entry point (verify, resolve, route, record)
- types: Internal domain types
- tenant_directory / event_log: Datastore protocols and in-memory adapters
- database / orm / sql_store: SQLAlchemy-backed adapters
- exceptions / logging: Error hierarchy and structured logging
"""

from .exceptions import (
    AlertRecordingFailure,
    AuthenticationFailure,
    CallTriageError,
    ClassificationFailure,
    DatastoreError,
    DeliveryFailure,
    InternalError,
    TenantNotFound,
    ValidationFailure,
)
from .types import (
    Acknowledgment,
    AlertAttempt,
    CallContext,
    EventLogEntry,
    InboundEvent,
    Tenant,
    TriageResult,
)

__all__ = [
    # Errors
    "CallTriageError",
    "AuthenticationFailure",
    "ValidationFailure",
    "TenantNotFound",
    "ClassificationFailure",
    "DeliveryFailure",
    "DatastoreError",
    "AlertRecordingFailure",
    "InternalError",
    # Types
    "Acknowledgment",
    "AlertAttempt",
    "CallContext",
    "EventLogEntry",
    "InboundEvent",
    "Tenant",
    "TriageResult",
]
