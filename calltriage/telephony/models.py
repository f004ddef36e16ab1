"""
CallTriage - Webhook Payload Models

Normalizes the call platform's webhook body into domain objects.

The platform wraps most events as {"message": {"type": ..., "call": {...}}},
but older integrations post the same fields at the top level. Every lookup
below tries the nested form first and falls back to the top level.

Only the identifiers, tool calls and call-context fields the pipeline needs
are extracted; the rest of the body is kept as the raw payload and never
persisted.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from calltriage.core.exceptions import ValidationFailure
from calltriage.core.types import (
    CallContext,
    CallRecord,
    ConversationTurn,
    InboundEvent,
    Tenant,
)
from calltriage.services.tools import ToolInvocation


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(*values: Any) -> Optional[str]:
    """First non-blank string among ``values``."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch (seconds or milliseconds) to aware UTC."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value:  # NaN
            return None
        seconds = value / 1000.0 if value > 1e12 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OSError, OverflowError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


# =============================================================================
# Envelope
# =============================================================================

def message_of(payload: Dict[str, Any]) -> Dict[str, Any]:
    """The nested ``message`` object, or the payload itself for flat bodies."""
    message = payload.get("message")
    return message if isinstance(message, dict) else payload


def call_of(payload: Dict[str, Any]) -> Dict[str, Any]:
    return _dict(message_of(payload).get("call")) or _dict(payload.get("call"))


def _phone_number(payload: Dict[str, Any]) -> Optional[str]:
    message = message_of(payload)
    for candidate in (message.get("phoneNumber"), payload.get("phoneNumber"), call_of(payload).get("phoneNumber")):
        if isinstance(candidate, dict):
            candidate = candidate.get("number")
        number = _text(candidate)
        if number:
            return number
    return None


def _assistant_id(payload: Dict[str, Any]) -> Optional[str]:
    message = message_of(payload)
    return _text(
        _dict(message.get("assistant")).get("id"),
        _dict(payload.get("assistant")).get("id"),
        call_of(payload).get("assistantId"),
    )


def body_digest(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()[:16]


def parse_event(raw_body: bytes) -> InboundEvent:
    """
    Parse a raw webhook body into an InboundEvent.

    Raises:
        ValidationFailure: body is not a JSON object or carries no event type
    """
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        raise ValidationFailure("Malformed JSON body") from None

    if not isinstance(payload, dict):
        raise ValidationFailure("Webhook body must be a JSON object")

    message = message_of(payload)
    event_type = _text(message.get("type"), payload.get("type"))
    if event_type is None:
        raise ValidationFailure("Missing event type", details={"expected": "message.type or type"})

    return InboundEvent(
        event_type=event_type,
        payload=payload,
        call_id=_text(call_of(payload).get("id"), message.get("callId")),
        assistant_id=_assistant_id(payload),
        phone_number=_phone_number(payload),
        body_digest=body_digest(raw_body),
    )


# =============================================================================
# Tool Calls
# =============================================================================

class ToolFunction(BaseModel):
    """Function name plus arguments; arguments may arrive JSON-encoded."""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def decode_arguments(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value


class ToolCallPayload(BaseModel):
    """One entry of the platform's tool call list."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    function: ToolFunction


def parse_tool_calls(event: InboundEvent) -> List[ToolInvocation]:
    """
    Extract tool invocations from a tool-calls event.

    Accepts ``toolCallList``, ``toolCalls`` and ``toolWithToolCallList``
    (where each item nests the call under ``toolCall``).

    Raises:
        ValidationFailure: no tool calls, or a call without id/function name
    """
    message = message_of(event.payload)
    raw_calls = message.get("toolCallList") or message.get("toolCalls")
    if not raw_calls:
        raw_calls = [
            _dict(item).get("toolCall", item)
            for item in message.get("toolWithToolCallList") or []
        ]
    if not isinstance(raw_calls, list) or not raw_calls:
        raise ValidationFailure("tool-calls event without tool calls")

    invocations = []
    for index, raw in enumerate(raw_calls):
        try:
            call = ToolCallPayload.model_validate(raw)
        except ValidationError as e:
            raise ValidationFailure(
                f"Invalid tool call at index {index}",
                details={"errors": e.errors(include_url=False, include_input=False)},
            ) from None
        invocations.append(ToolInvocation(call.id, call.function.name, call.function.arguments))
    return invocations


# =============================================================================
# Call Context
# =============================================================================

_ROLE_ALIASES = {"bot": "assistant", "human": "user", "customer": "user"}


def _history(message: Dict[str, Any]) -> List[ConversationTurn]:
    artifact = _dict(message.get("artifact"))
    raw_turns = message.get("messages") or artifact.get("messages") or message.get("conversation") or []
    turns = []
    for raw in raw_turns if isinstance(raw_turns, list) else []:
        raw = _dict(raw)
        text = _text(raw.get("message"), raw.get("content"), raw.get("text"))
        role = str(raw.get("role", "")).lower()
        if text and role != "system":
            turns.append(ConversationTurn(_ROLE_ALIASES.get(role, role), text))
    return turns


def _temperature(metadata: Dict[str, Any]) -> Optional[float]:
    for key in ("outside_temperature_f", "outsideTemperatureF", "temperature_f", "temperature"):
        value = metadata.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def build_call_context(event: InboundEvent, tenant: Tenant) -> CallContext:
    """Structured call facts for the classifier and fan-out."""
    message = message_of(event.payload)
    call = call_of(event.payload)
    artifact = _dict(message.get("artifact"))
    customer = _dict(message.get("customer")) or _dict(call.get("customer"))
    metadata = {**_dict(call.get("metadata")), **_dict(message.get("metadata"))}

    return CallContext(
        tenant_id=tenant.tenant_id,
        call_id=event.call_id,
        industry_code=tenant.industry_code,
        primary_language=tenant.primary_language,
        supported_languages=tenant.languages,
        transcript=_text(
            message.get("transcript"),
            message.get("issue_description"),
            artifact.get("transcript"),
        ) or "",
        history=_history(message),
        customer_name=_text(customer.get("name"), metadata.get("customer_name")),
        customer_phone=_text(customer.get("number"), metadata.get("customer_phone")),
        customer_address=_text(metadata.get("customer_address"), metadata.get("address")),
        language_hint=_text(message.get("language"), metadata.get("language"), call.get("language")),
        urgency_threshold=tenant.urgency_threshold,
        outside_temperature_f=_temperature(metadata),
        timezone=tenant.timezone,
    )


# =============================================================================
# Call Records
# =============================================================================

_ENDED_EVENTS = frozenset({"call-ended", "hang", "end-of-call-report"})


def call_record_from_event(event: InboundEvent, tenant_id: str, keep_transcript: bool = False) -> CallRecord:
    """
    Lifecycle state carried by one event. Fields the event says nothing about
    are left None so the upsert keeps what was stored before.
    """
    message = message_of(event.payload)
    call = call_of(event.payload)
    artifact = _dict(message.get("artifact"))

    status = "in-progress"
    ended_at = None
    ended_reason = None
    if event.event_type in _ENDED_EVENTS:
        status = "ended"
        ended_at = parse_timestamp(message.get("endedAt") or call.get("endedAt")) or event.received_at
        ended_reason = _text(message.get("endedReason"), call.get("endedReason"))
    elif event.event_type == "status-update":
        status = _text(message.get("status")) or status
        if status == "ended":
            ended_at = event.received_at
            ended_reason = _text(message.get("endedReason"))

    language = None
    if event.event_type == "language-detected":
        language = _text(message.get("language"), message.get("detectedLanguage"))

    started_at = parse_timestamp(message.get("startedAt") or call.get("startedAt"))
    if started_at is None and event.event_type == "call-started":
        started_at = event.received_at

    transcript = None
    if keep_transcript and event.event_type == "end-of-call-report":
        transcript = _text(artifact.get("transcript"), message.get("transcript"))

    return CallRecord(
        call_id=event.call_id,
        tenant_id=tenant_id,
        status=status,
        language=language,
        started_at=started_at,
        ended_at=ended_at,
        ended_reason=ended_reason,
        last_event_type=event.event_type,
        transcript=transcript,
        updated_at=event.received_at,
    )
