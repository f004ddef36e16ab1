"""
CallTriage - Webhook Payload Parsing Tests

Tests for turning raw platform bodies into domain objects.
These tests verify:
- Envelope parsing (nested and flat bodies, identifiers, digest)
- Tool call extraction and validation
- Call context extraction (transcript, customer, history, metadata)
- Call record derivation for lifecycle events

Run with: pytest tests/test_models.py -v
"""

import json

import pytest

from calltriage.core.exceptions import ValidationFailure
from calltriage.core.types import EventCategory, Tenant
from calltriage.telephony.models import (
    build_call_context,
    call_record_from_event,
    parse_event,
    parse_timestamp,
    parse_tool_calls,
)


def body(payload) -> bytes:
    return json.dumps(payload).encode()


class TestParseEvent:
    """Tests for parse_event."""

    def test_nested_message(self):
        """Should read type and identifiers from the nested message."""
        event = parse_event(body({
            "message": {
                "type": "call-started",
                "call": {"id": "call-1"},
                "assistant": {"id": "asst_acme"},
                "phoneNumber": {"number": "+15555550100"},
            }
        }))

        assert event.event_type == "call-started"
        assert event.category == EventCategory.LIFECYCLE
        assert event.call_id == "call-1"
        assert event.assistant_id == "asst_acme"
        assert event.phone_number == "+15555550100"

    def test_flat_body(self):
        """Should accept the older flat body shape."""
        event = parse_event(body({
            "type": "transcript",
            "call": {"id": "call-2", "assistantId": "asst_rio"},
            "phoneNumber": "+15555550200",
        }))

        assert event.category == EventCategory.EMERGENCY
        assert event.call_id == "call-2"
        assert event.assistant_id == "asst_rio"
        assert event.phone_number == "+15555550200"

    def test_call_id_from_message(self):
        """Should fall back to message.callId."""
        event = parse_event(body({"message": {"type": "hang", "callId": "call-3"}}))
        assert event.call_id == "call-3"

    def test_unknown_type_is_accepted(self):
        """Should parse unknown event types and categorize them as unknown."""
        event = parse_event(body({"message": {"type": "model-output"}}))
        assert event.category == EventCategory.UNKNOWN

    def test_idempotency_key(self):
        """Should key events by call id, type and body digest."""
        raw = body({"message": {"type": "call-started", "call": {"id": "call-1"}}})

        first = parse_event(raw)
        again = parse_event(raw)
        other = parse_event(body({"message": {"type": "call-started", "call": {"id": "call-1"}, "x": 1}}))

        assert first.idempotency_key == again.idempotency_key
        assert first.idempotency_key.startswith("call-1:call-started:")
        assert first.idempotency_key != other.idempotency_key

    @pytest.mark.parametrize("raw,message", [
        (b"{not json", "Malformed JSON body"),
        (b"[1, 2]", "Webhook body must be a JSON object"),
        (b'{"message": {"call": {"id": "c"}}}', "Missing event type"),
        (b'{"message": {"type": "   "}}', "Missing event type"),
    ])
    def test_invalid_bodies(self, raw, message):
        """Should raise ValidationFailure for unusable bodies."""
        with pytest.raises(ValidationFailure) as exc_info:
            parse_event(raw)
        assert exc_info.value.message == message
        assert exc_info.value.status_code == 400


class TestParseToolCalls:
    """Tests for parse_tool_calls."""

    def test_tool_call_list(self):
        """Should decode JSON-string arguments."""
        event = parse_event(body({"message": {
            "type": "tool-calls",
            "toolCallList": [
                {"id": "tc1", "function": {"name": "check_emergency", "arguments": '{"issue_description": "fire"}'}},
                {"id": "tc2", "function": {"name": "check_availability"}},
            ],
        }}))

        invocations = parse_tool_calls(event)

        assert [(i.tool_call_id, i.name) for i in invocations] == [
            ("tc1", "check_emergency"),
            ("tc2", "check_availability"),
        ]
        assert invocations[0].arguments == {"issue_description": "fire"}
        assert invocations[1].arguments == {}

    def test_tool_with_tool_call_list(self):
        """Should unwrap toolWithToolCallList entries."""
        event = parse_event(body({"message": {
            "type": "tool-calls",
            "toolWithToolCallList": [
                {"name": "check_emergency", "toolCall": {"id": "tc9", "function": {"name": "check_emergency", "arguments": {}}}},
            ],
        }}))

        assert parse_tool_calls(event)[0].tool_call_id == "tc9"

    def test_no_tool_calls(self):
        """Should reject a tool-calls event with nothing to run."""
        event = parse_event(body({"message": {"type": "tool-calls", "toolCallList": []}}))
        with pytest.raises(ValidationFailure):
            parse_tool_calls(event)

    def test_missing_id(self):
        """Should reject a tool call without an id."""
        event = parse_event(body({"message": {
            "type": "tool-calls",
            "toolCallList": [{"function": {"name": "check_emergency"}}],
        }}))
        with pytest.raises(ValidationFailure, match="index 0"):
            parse_tool_calls(event)

    def test_bad_arguments_json(self):
        """Should reject arguments that are not valid JSON."""
        event = parse_event(body({"message": {
            "type": "tool-calls",
            "toolCallList": [{"id": "tc1", "function": {"name": "x", "arguments": "{oops"}}],
        }}))
        with pytest.raises(ValidationFailure):
            parse_tool_calls(event)


class TestCallContext:
    """Tests for build_call_context."""

    def test_transcript_and_customer(self, acme_tenant: Tenant):
        """Should extract transcript, customer and metadata."""
        event = parse_event(body({"message": {
            "type": "transcript",
            "transcript": "no heat",
            "call": {
                "id": "call-1",
                "customer": {"name": "Pat", "number": "+15555550999"},
                "metadata": {"address": "12 Elm St", "outside_temperature_f": "18"},
            },
            "language": "en-US",
        }}))

        ctx = build_call_context(event, acme_tenant)

        assert ctx.tenant_id == "acme-hvac"
        assert ctx.industry_code == "hvac"
        assert ctx.transcript == "no heat"
        assert ctx.customer_name == "Pat"
        assert ctx.customer_phone == "+15555550999"
        assert ctx.customer_address == "12 Elm St"
        assert ctx.outside_temperature_f == 18.0
        assert ctx.language_hint == "en-US"

    def test_history_roles(self, acme_tenant: Tenant):
        """Should map role aliases and drop system turns."""
        event = parse_event(body({"message": {
            "type": "emergency-check",
            "messages": [
                {"role": "system", "message": "You are a dispatcher"},
                {"role": "bot", "message": "How can I help?"},
                {"role": "customer", "content": "water everywhere"},
            ],
        }}))

        ctx = build_call_context(event, acme_tenant)

        assert [(t.role, t.text) for t in ctx.history] == [
            ("assistant", "How can I help?"),
            ("user", "water everywhere"),
        ]
        assert ctx.scan_text() == "water everywhere"

    def test_tenant_threshold_carried(self, acme_tenant: Tenant):
        """Should carry the tenant's threshold override."""
        acme_tenant.urgency_threshold = 0.9
        event = parse_event(body({"message": {"type": "transcript"}}))
        assert build_call_context(event, acme_tenant).urgency_threshold == 0.9


class TestCallRecords:
    """Tests for call_record_from_event."""

    def test_call_started(self):
        """Should mark the call in progress with a start time."""
        event = parse_event(body({"message": {"type": "call-started", "call": {"id": "c1"}}}))

        record = call_record_from_event(event, "acme-hvac")

        assert record.status == "in-progress"
        assert record.started_at == event.received_at
        assert record.last_event_type == "call-started"

    def test_end_of_call_report(self):
        """Should close the call and keep the transcript only when allowed."""
        raw = body({"message": {
            "type": "end-of-call-report",
            "call": {"id": "c1"},
            "endedReason": "customer-ended-call",
            "endedAt": "2026-01-14T16:05:00Z",
            "artifact": {"transcript": "no heat"},
        }})

        record = call_record_from_event(parse_event(raw), "acme-hvac")
        kept = call_record_from_event(parse_event(raw), "acme-hvac", keep_transcript=True)

        assert record.status == "ended"
        assert record.ended_reason == "customer-ended-call"
        assert record.ended_at.isoformat() == "2026-01-14T16:05:00+00:00"
        assert record.transcript is None
        assert kept.transcript == "no heat"

    def test_language_detected(self):
        """Should record the detected language."""
        event = parse_event(body({"message": {"type": "language-detected", "call": {"id": "c1"}, "language": "es"}}))
        assert call_record_from_event(event, "rio-plumbing").language == "es"

    def test_status_update(self):
        """Should carry the platform status."""
        event = parse_event(body({"message": {"type": "status-update", "call": {"id": "c1"}, "status": "ringing"}}))
        assert call_record_from_event(event, "acme-hvac").status == "ringing"


class TestTimestamps:
    """Tests for parse_timestamp."""

    def test_formats(self):
        """Should accept ISO strings and epoch seconds or milliseconds."""
        iso = parse_timestamp("2026-01-14T16:05:00Z")
        assert parse_timestamp(iso.timestamp()) == iso
        assert parse_timestamp(iso.timestamp() * 1000) == iso
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None

    @pytest.mark.parametrize("value", [1e20, -1e20, float("nan"), float("inf")])
    def test_out_of_range_epoch(self, value):
        """Should return None for epochs no datetime can hold."""
        assert parse_timestamp(value) is None

    def test_out_of_range_start_falls_back(self):
        """Should fall back to the receive time for an unusable startedAt."""
        event = parse_event(body({"message": {"type": "call-started", "call": {"id": "c1"}, "startedAt": 1e20}}))

        record = call_record_from_event(event, "acme-hvac")

        assert record.started_at == event.received_at
