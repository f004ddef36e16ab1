"""
CallTriage - API Schemas

Pydantic models for the operational read API (analytics, call records,
webhook capability metadata). Webhook acknowledgments are not modelled
here; their shape is fixed by the call platform and built by the dispatcher.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ===========================================
# Triage
# ===========================================

class KeywordHitSchema(BaseModel):
    phrase: str
    weight: float
    occurrences: int = 1


class ModifierSchema(BaseModel):
    kind: str = Field(description="industry | cultural | repetition")
    name: str
    delta: float


class TriageResultSchema(BaseModel):
    """One urgency classification, as stored in the event log."""
    triage_id: str
    tenant_id: str
    call_id: Optional[str] = None
    score: float = Field(ge=0.0, le=1.0)
    urgency_level: str
    detected_language: str
    language_source: str = Field(description="hint | detected | default")
    hits: List[KeywordHitSchema] = Field(default_factory=list)
    modifiers: List[ModifierSchema] = Field(default_factory=list)
    raw_weight: float
    threshold: float
    requires_immediate_attention: bool
    created_at: datetime
    error: Optional[str] = None


class AlertAttemptSchema(BaseModel):
    """
    One SMS delivery attempt.

    Privacy: recipient is always masked.
    """
    attempt_id: str
    triage_id: Optional[str] = Field(default=None, description="None for customer notifications")
    tenant_id: str
    call_id: Optional[str] = None
    target: str = Field(description="technician | customer")
    recipient: str
    status: str = Field(description="sent | failed | skipped")
    channel: str = "sms"
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime


# ===========================================
# Event Log
# ===========================================

class EventLogEntrySchema(BaseModel):
    entry_id: str
    event_type: Optional[str] = None
    category: str
    outcome: str
    status_code: int
    tenant_id: Optional[str] = None
    call_id: Optional[str] = None
    identifiers: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Attempted assistant id, masked phone number and call id",
    )
    idempotency_key: Optional[str] = None
    is_replay: bool = False
    resolved_by: Optional[str] = None
    triage_results: List[TriageResultSchema] = Field(default_factory=list)
    alert_attempts: int = 0
    detail: Optional[str] = None
    received_at: datetime


class EventLogSummarySchema(BaseModel):
    """Aggregates over the event log, optionally for one tenant."""
    tenant_id: Optional[str] = None
    total_events: int
    replays: int
    outcome_counts: Dict[str, int]
    event_type_counts: Dict[str, int]
    triage_count: int
    emergencies: int
    avg_score: float
    language_counts: Dict[str, int]
    alert_status_counts: Dict[str, int]
    delivery_rate: float = Field(ge=0.0, le=1.0, description="sent / (sent + failed)")


# ===========================================
# Calls
# ===========================================

class CallRecordSchema(BaseModel):
    call_id: str
    tenant_id: str
    status: str
    language: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    ended_reason: Optional[str] = None
    last_event_type: Optional[str] = None
    updated_at: datetime


class CallDetailResponse(BaseModel):
    """Call lifecycle state plus every alert sent for it."""
    call: CallRecordSchema
    alerts: List[AlertAttemptSchema] = Field(default_factory=list)


# ===========================================
# Webhook Info
# ===========================================

class WebhookInfoResponse(BaseModel):
    """Static capability metadata returned by GET on the webhook URL."""
    success: bool = True
    message: str
    multiTenant: bool = True
    identificationMethods: List[str]
    supportedEvents: Dict[str, List[str]]
    tools: List[str]
    signatureVerification: bool
    lastUpdated: str
