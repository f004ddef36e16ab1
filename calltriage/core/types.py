"""
CallTriage - Core Domain Types

Internal type definitions for the webhook pipeline. These are domain objects
used within the core and service layers, independent of HTTP serialization.

Design Notes:
- Dataclasses are the lingua franca between dispatcher, resolver, classifier
  and fan-out. The router only ever sees an Acknowledgment.
- Records that are persisted (TriageResult, AlertAttempt) are frozen.
- Enums subclass str so they serialize as their value.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a short prefixed identifier, e.g. ``tri_3f9a0c1d2b4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# =============================================================================
# Enums
# =============================================================================

class EventCategory(str, Enum):
    """Handler family an inbound event type is routed to."""
    LIFECYCLE = "lifecycle"
    TOOL = "tool"
    EMERGENCY = "emergency"
    UNKNOWN = "unknown"


class EventOutcome(str, Enum):
    """How the dispatcher finished with an event."""
    PROCESSED = "processed"
    IGNORED = "ignored"
    REJECTED_AUTH = "rejected_auth"
    REJECTED_VALIDATION = "rejected_validation"
    REJECTED_TENANT = "rejected_tenant"
    FAILED = "failed"


class AlertTarget(str, Enum):
    TECHNICIAN = "technician"
    CUSTOMER = "customer"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class ModifierKind(str, Enum):
    """Modifier families, listed in the order they are applied."""
    INDUSTRY = "industry"
    CULTURAL = "cultural"
    REPETITION = "repetition"
    TIME_OF_DAY = "time_of_day"


class LanguageSource(str, Enum):
    """How the working language of a transcript was chosen."""
    HINT = "hint"
    DETECTED = "detected"
    DEFAULT = "default"


class UrgencyLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class ResolutionOutcome(str, Enum):
    HIT = "hit"
    MISS = "miss"
    SKIPPED = "skipped"
    ERROR = "error"


LIFECYCLE_EVENT_TYPES = frozenset({
    "call-started",
    "call-ended",
    "status-update",
    "end-of-call-report",
    "hang",
    "speech-update",
    "language-detected",
})

TOOL_EVENT_TYPES = frozenset({"tool-calls"})

EMERGENCY_EVENT_TYPES = frozenset({
    "transcript",
    "transcript-updated",
    "emergency-check",
})


def categorize_event(event_type: str) -> EventCategory:
    """Map a platform event type to the handler family that owns it."""
    if event_type in LIFECYCLE_EVENT_TYPES:
        return EventCategory.LIFECYCLE
    if event_type in TOOL_EVENT_TYPES:
        return EventCategory.TOOL
    if event_type in EMERGENCY_EVENT_TYPES:
        return EventCategory.EMERGENCY
    return EventCategory.UNKNOWN


# =============================================================================
# Tenant Model
# =============================================================================

@dataclass(frozen=True)
class TechnicianContact:
    """An on-call technician who receives emergency SMS alerts."""
    name: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class Assistant:
    """A platform-side voice assistant owned by exactly one tenant."""
    assistant_id: str
    tenant_id: str
    phone_number: Optional[str] = None
    is_active: bool = True


@dataclass
class Tenant:
    """
    A service business using the platform; the unit of data isolation.

    Attributes:
        tenant_id: Stable identifier
        name: Display name used in outbound messages
        industry_code: Lexicon industry ("hvac", "plumbing", ...)
        primary_language: Tie-break language for detection
        supported_languages: Languages the assistant speaks
        technicians: Alert recipients
        assistants: Platform assistants owned by this tenant
        customer_sms_consent: Whether callers may receive a confirmation SMS
        urgency_threshold: Overrides the industry/default threshold
        business_phone: Callback number quoted to customers
        timezone: IANA zone used by the availability tool
        business_hours_start: First bookable hour (local, 24h)
        business_hours_end: Hour bookings stop (local, 24h, exclusive)
    """
    tenant_id: str
    name: str
    industry_code: str = "generic"
    primary_language: str = "en"
    supported_languages: Tuple[str, ...] = ("en",)
    technicians: List[TechnicianContact] = field(default_factory=list)
    assistants: List[Assistant] = field(default_factory=list)
    customer_sms_consent: bool = False
    urgency_threshold: Optional[float] = None
    business_phone: Optional[str] = None
    timezone: str = "UTC"
    business_hours_start: int = 8
    business_hours_end: int = 18

    @property
    def languages(self) -> Tuple[str, ...]:
        """Supported languages with the primary language guaranteed first."""
        rest = tuple(lang for lang in self.supported_languages if lang != self.primary_language)
        return (self.primary_language,) + rest


# =============================================================================
# Inbound Event
# =============================================================================

@dataclass(frozen=True)
class InboundEvent:
    """
    Normalized webhook envelope. Constructed per request, never persisted.

    ``body_digest`` is the first 16 hex chars of sha256(raw body) and forms the
    idempotency marker together with call id and event type.
    """
    event_type: str
    payload: Dict[str, Any]
    call_id: Optional[str] = None
    assistant_id: Optional[str] = None
    phone_number: Optional[str] = None
    body_digest: str = ""
    received_at: datetime = field(default_factory=utcnow)

    @property
    def category(self) -> EventCategory:
        return categorize_event(self.event_type)

    @property
    def idempotency_key(self) -> str:
        return f"{self.call_id or '-'}:{self.event_type}:{self.body_digest}"


# =============================================================================
# Call Context
# =============================================================================

@dataclass(frozen=True)
class ConversationTurn:
    role: str
    text: str


@dataclass
class CallContext:
    """
    Structured facts about a call needed by the classifier and fan-out.
    Derived from InboundEvent + Tenant.
    """
    tenant_id: str
    call_id: Optional[str]
    industry_code: str
    primary_language: str = "en"
    supported_languages: Tuple[str, ...] = ("en",)
    transcript: str = ""
    history: List[ConversationTurn] = field(default_factory=list)
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    language_hint: Optional[str] = None
    urgency_threshold: Optional[float] = None
    outside_temperature_f: Optional[float] = None
    timezone: str = "UTC"

    def caller_turns(self) -> List[str]:
        """Texts spoken by the caller, in order."""
        return [t.text for t in self.history if t.role in ("user", "customer", "caller") and t.text]

    def scan_text(self) -> str:
        """Text the classifier scans: the transcript, else the caller turns."""
        if self.transcript and self.transcript.strip():
            return self.transcript
        return " ".join(self.caller_turns())


# =============================================================================
# Triage Result
# =============================================================================

@dataclass(frozen=True)
class KeywordHit:
    """One matched lexicon phrase and the weight it contributed."""
    phrase: str
    weight: float
    occurrences: int = 1


@dataclass(frozen=True)
class AppliedModifier:
    kind: ModifierKind
    name: str
    delta: float


# Score bands used for labels and arrival estimates.
_URGENCY_BANDS = (
    (0.8, UrgencyLevel.EMERGENCY),
    (0.6, UrgencyLevel.HIGH),
    (0.4, UrgencyLevel.MEDIUM),
)

_ARRIVAL_WINDOWS = (
    (0.9, "15-30 minutes"),
    (0.8, "30-45 minutes"),
    (0.7, "45-60 minutes"),
)


@dataclass(frozen=True)
class TriageResult:
    """
    Outcome of scoring one call for urgency.

    Attributes:
        triage_id: Unique id, referenced by alert attempts
        tenant_id: Owning tenant
        call_id: Platform call id (may be None for ad-hoc checks)
        score: Normalized urgency in [0.0, 1.0]
        detected_language: Working language used for matching
        language_source: Whether the language came from a hint, detection or default
        hits: Matched phrases with the base weight each contributed
        modifiers: Modifiers that fired, in application order
        raw_weight: Accumulated weight before normalization
        threshold: Threshold the score was compared against
        requires_immediate_attention: score >= threshold
        created_at: UTC timestamp
        error: Set when scoring failed and the result was degraded to zero
    """
    triage_id: str
    tenant_id: str
    call_id: Optional[str]
    score: float
    detected_language: str
    language_source: LanguageSource
    hits: Tuple[KeywordHit, ...] = ()
    modifiers: Tuple[AppliedModifier, ...] = ()
    raw_weight: float = 0.0
    threshold: float = 0.7
    requires_immediate_attention: bool = False
    created_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def __post_init__(self):
        if math.isnan(self.score) or not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be within [0, 1], got {self.score}")

    @property
    def urgency_level(self) -> UrgencyLevel:
        for floor, level in _URGENCY_BANDS:
            if self.score >= floor:
                return level
        return UrgencyLevel.LOW

    @property
    def estimated_arrival(self) -> str:
        """Technician arrival window quoted to the customer."""
        for floor, window in _ARRIVAL_WINDOWS:
            if self.score > floor:
                return window
        return "1-2 hours"

    @classmethod
    def empty(
        cls,
        tenant_id: str,
        call_id: Optional[str],
        language: str,
        language_source: LanguageSource = LanguageSource.DEFAULT,
        threshold: float = 0.7,
        error: Optional[str] = None,
    ) -> "TriageResult":
        """Factory for a zero-score result (empty transcript or failed scoring)."""
        return cls(
            triage_id=new_id("tri"),
            tenant_id=tenant_id,
            call_id=call_id,
            score=0.0,
            detected_language=language,
            language_source=language_source,
            threshold=threshold,
            requires_immediate_attention=False,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to serializable dictionary."""
        return {
            "triage_id": self.triage_id,
            "tenant_id": self.tenant_id,
            "call_id": self.call_id,
            "score": round(self.score, 4),
            "urgency_level": self.urgency_level.value,
            "detected_language": self.detected_language,
            "language_source": self.language_source.value,
            "hits": [
                {"phrase": h.phrase, "weight": h.weight, "occurrences": h.occurrences}
                for h in self.hits
            ],
            "modifiers": [
                {"kind": m.kind.value, "name": m.name, "delta": round(m.delta, 4)}
                for m in self.modifiers
            ],
            "raw_weight": round(self.raw_weight, 4),
            "threshold": self.threshold,
            "requires_immediate_attention": self.requires_immediate_attention,
            "created_at": self.created_at.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriageResult":
        """Rebuild a result persisted with ``to_dict``."""
        return cls(
            triage_id=data["triage_id"],
            tenant_id=data["tenant_id"],
            call_id=data.get("call_id"),
            score=float(data["score"]),
            detected_language=data["detected_language"],
            language_source=LanguageSource(data["language_source"]),
            hits=tuple(
                KeywordHit(h["phrase"], float(h["weight"]), int(h.get("occurrences", 1)))
                for h in data.get("hits", [])
            ),
            modifiers=tuple(
                AppliedModifier(ModifierKind(m["kind"]), m["name"], float(m["delta"]))
                for m in data.get("modifiers", [])
            ),
            raw_weight=float(data.get("raw_weight", 0.0)),
            threshold=float(data.get("threshold", 0.7)),
            requires_immediate_attention=bool(data.get("requires_immediate_attention")),
            created_at=datetime.fromisoformat(data["created_at"]),
            error=data.get("error"),
        )


# =============================================================================
# Alerts
# =============================================================================

@dataclass(frozen=True)
class AlertAttempt:
    """
    One delivery attempt to one recipient. Append-only.

    ``recipient`` is always masked; raw numbers are never persisted here.
    ``triage_id`` is None for customer notifications sent by a tool.
    """
    attempt_id: str
    triage_id: Optional[str]
    tenant_id: str
    call_id: Optional[str]
    target: AlertTarget
    recipient: str
    status: DeliveryStatus
    channel: str = "sms"
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "triage_id": self.triage_id,
            "tenant_id": self.tenant_id,
            "call_id": self.call_id,
            "target": self.target.value,
            "recipient": self.recipient,
            "status": self.status.value,
            "channel": self.channel,
            "provider_message_id": self.provider_message_id,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# Call Records
# =============================================================================

@dataclass
class CallRecord:
    """Lifecycle state for a call, upserted by call id."""
    call_id: str
    tenant_id: str
    status: str = "in-progress"
    language: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    ended_reason: Optional[str] = None
    last_event_type: Optional[str] = None
    transcript: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "tenant_id": self.tenant_id,
            "status": self.status,
            "language": self.language,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "ended_reason": self.ended_reason,
            "last_event_type": self.last_event_type,
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# Tenant Resolution
# =============================================================================

@dataclass(frozen=True)
class ResolutionAttempt:
    """What a single resolver strategy did."""
    strategy: str
    outcome: ResolutionOutcome
    detail: Optional[str] = None


@dataclass(frozen=True)
class Resolution:
    tenant_id: str
    strategy: str
    attempts: Tuple[ResolutionAttempt, ...] = ()


# =============================================================================
# Event Log
# =============================================================================

@dataclass(frozen=True)
class EventLogEntry:
    """
    Audit row written for every webhook, rejected or not.

    ``identifiers`` holds the attempted assistant id, masked phone number and
    call id so operators can diagnose resolution failures.
    """
    entry_id: str
    event_type: Optional[str]
    category: EventCategory
    outcome: EventOutcome
    status_code: int
    tenant_id: Optional[str] = None
    call_id: Optional[str] = None
    identifiers: Dict[str, Optional[str]] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    is_replay: bool = False
    resolved_by: Optional[str] = None
    triage_results: Tuple[TriageResult, ...] = ()
    alert_attempts: int = 0
    detail: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "event_type": self.event_type,
            "category": self.category.value,
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "tenant_id": self.tenant_id,
            "call_id": self.call_id,
            "identifiers": dict(self.identifiers),
            "idempotency_key": self.idempotency_key,
            "is_replay": self.is_replay,
            "resolved_by": self.resolved_by,
            "triage_results": [t.to_dict() for t in self.triage_results],
            "alert_attempts": self.alert_attempts,
            "detail": self.detail,
            "received_at": self.received_at.isoformat(),
        }


@dataclass
class EventLogSummary:
    """
    Aggregated view over the event log for dashboards.
    """
    total_events: int = 0
    replays: int = 0
    outcome_counts: Dict[str, int] = field(default_factory=dict)
    event_type_counts: Dict[str, int] = field(default_factory=dict)
    triage_count: int = 0
    emergencies: int = 0
    avg_score: float = 0.0
    language_counts: Dict[str, int] = field(default_factory=dict)
    alert_status_counts: Dict[str, int] = field(default_factory=dict)
    delivery_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_events": self.total_events,
            "replays": self.replays,
            "outcome_counts": self.outcome_counts,
            "event_type_counts": self.event_type_counts,
            "triage_count": self.triage_count,
            "emergencies": self.emergencies,
            "avg_score": round(self.avg_score, 4),
            "language_counts": self.language_counts,
            "alert_status_counts": self.alert_status_counts,
            "delivery_rate": round(self.delivery_rate, 4),
        }


# =============================================================================
# Acknowledgment
# =============================================================================

@dataclass(frozen=True)
class Acknowledgment:
    """Synchronous response returned to the call platform."""
    status_code: int
    body: Dict[str, Any]
