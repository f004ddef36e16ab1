"""
CallTriage - Event Dispatcher

Single entry point for call platform webhooks.

Architecture:
    Every webhook goes through the same staged flow:

    1. VERIFY: signature / shared secret (401 on failure, resolver never runs)
    2. PARSE: raw body -> InboundEvent, tool calls validated up front (400)
    3. RESOLVE: owning tenant via the strategy chain (404 with identifiers)
    4. ROUTE: lifecycle upsert, tool invocation, or emergency triage
    5. RECORD: one event log entry, on every path including rejections

Acknowledgments:
    - tool-calls: {"results": [{"toolCallId": ..., "result": ...}]}
    - everything else: {"success": bool, "result" | "error": ...}

Failure Semantics:
    - Rejections (auth, validation, tenant) are 4xx and never retried here
    - Classification and per-recipient delivery failures are contained by
      the classifier and fan-out and never reach this level
    - Anything else is logged with full context and acknowledged as a
      generic 500 so the platform may retry

Replays:
    An event whose (call id, event type, body digest) key was already logged
    is flagged ``is_replay`` and logged again. Lifecycle replays merge into the
    same call record. Emergency replays are re-triaged, so alerting is
    at-least-once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Mapping, Optional, TypeVar

from calltriage.config import Settings
from calltriage.core.event_log import EventLog
from calltriage.core.exceptions import (
    AlertRecordingFailure,
    AuthenticationFailure,
    TenantNotFound,
    ValidationFailure,
)
from calltriage.core.logging import LogContext, bind_call, bind_tenant, get_logger, mask_call_id
from calltriage.core.tenant_directory import TenantDirectory
from calltriage.core.types import (
    Acknowledgment,
    DeliveryStatus,
    EventCategory,
    EventLogEntry,
    EventOutcome,
    InboundEvent,
    Tenant,
    TriageResult,
    new_id,
    utcnow,
)
from calltriage.services.alerts import AlertFanout
from calltriage.services.classifier import UrgencyClassifier
from calltriage.services.resolver import ResolutionCriteria, TenantResolver
from calltriage.services.tools import ToolInvocation, ToolRegistry
from calltriage.telephony.models import (
    build_call_context,
    call_record_from_event,
    parse_event,
    parse_tool_calls,
)
from calltriage.telephony.signature import WebhookVerifier

logger = logging.getLogger(__name__)
audit = get_logger(f"{__name__}.audit")

T = TypeVar("T")

INTERNAL_ERROR_MESSAGE = "internal error"


@dataclass
class _Trace:
    """What is known about a webhook so far; feeds the log entry on any path."""
    event: Optional[InboundEvent] = None
    identifiers: Dict[str, Optional[str]] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    resolved_by: Optional[str] = None
    is_replay: bool = False
    triage_results: List[TriageResult] = field(default_factory=list)
    alert_attempts: int = 0


@dataclass(frozen=True)
class _Routed:
    body: Dict[str, Any]
    outcome: EventOutcome = EventOutcome.PROCESSED
    detail: Optional[str] = None


class EventDispatcher:
    """
    Verifies, resolves and routes call platform webhooks.

    Args:
        verifier: Webhook authenticity check
        resolver: Tenant resolution chain
        directory: Tenant lookups (tenant record after resolution)
        classifier: Urgency classifier
        fanout: Alert fan-out
        tools: Tool registry for tool-calls events
        event_log: Audit log and call records
        datastore_timeout_seconds: Timeout for each direct datastore call
        keep_transcripts: Store end-of-call transcripts on call records
        anonymize_logs: Mask call ids in plain log lines
    """

    def __init__(
        self,
        verifier: WebhookVerifier,
        resolver: TenantResolver,
        directory: TenantDirectory,
        classifier: UrgencyClassifier,
        fanout: AlertFanout,
        tools: ToolRegistry,
        event_log: EventLog,
        datastore_timeout_seconds: float = 2.0,
        keep_transcripts: bool = False,
        anonymize_logs: bool = True,
    ):
        self._verifier = verifier
        self._resolver = resolver
        self._directory = directory
        self._classifier = classifier
        self._fanout = fanout
        self._tools = tools
        self._event_log = event_log
        self._timeout = datastore_timeout_seconds
        self._keep_transcripts = keep_transcripts
        self._anonymize_logs = anonymize_logs

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def directory(self) -> TenantDirectory:
        return self._directory

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def verifier_enabled(self) -> bool:
        return self._verifier.enabled

    def _cid(self, call_id: Optional[str]) -> Optional[str]:
        return mask_call_id(call_id) if self._anonymize_logs else call_id

    async def _store(self, operation: Awaitable[T]) -> T:
        return await asyncio.wait_for(operation, timeout=self._timeout)

    # =========================================================================
    # Entry Point
    # =========================================================================

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> Acknowledgment:
        """
        Process one webhook and build the acknowledgment.

        Never raises; every outcome is an Acknowledgment plus a log entry.
        """
        trace = _Trace()
        with LogContext(correlation_id=new_id("evt")):
            try:
                return await self._handle(raw_body, headers, trace)
            except Exception as e:
                event_type = trace.event.event_type if trace.event else None
                logger.exception(
                    "Webhook processing failed: type=%s call=%s tenant=%s",
                    event_type,
                    self._cid(trace.event.call_id if trace.event else None),
                    trace.tenant_id,
                )
                if isinstance(e, AlertRecordingFailure):
                    await self._salvage_alerts(trace, e)
                await self._record_failure(trace, f"{type(e).__name__}: {e}")
                return Acknowledgment(500, {"success": False, "error": INTERNAL_ERROR_MESSAGE})

    async def _handle(self, raw_body: bytes, headers: Mapping[str, str], trace: _Trace) -> Acknowledgment:
        # --- Verify ---
        try:
            self._verifier.verify(raw_body, headers)
        except AuthenticationFailure as e:
            logger.warning("Webhook rejected: %s", e.message)
            return await self._reject(trace, EventOutcome.REJECTED_AUTH, e.status_code, e.message)

        # --- Parse ---
        try:
            event = parse_event(raw_body)
            trace.event = event
            bind_call(event.call_id)
            invocations = parse_tool_calls(event) if event.category == EventCategory.TOOL else []
        except ValidationFailure as e:
            logger.warning("Webhook rejected: %s", e.message)
            return await self._reject(trace, EventOutcome.REJECTED_VALIDATION, e.status_code, e.message)

        criteria = ResolutionCriteria(event.assistant_id, event.phone_number, event.call_id)
        trace.identifiers = criteria.identifiers()
        trace.is_replay = await self._store(self._event_log.has_idempotency_key(event.idempotency_key))

        # --- Resolve ---
        try:
            resolution = await self._resolver.resolve(event.assistant_id, event.phone_number, event.call_id)
            tenant = await self._store(self._directory.get_tenant(resolution.tenant_id))
            if tenant is None:
                raise TenantNotFound(
                    "Organization not found for this assistant",
                    identifiers=trace.identifiers,
                    attempts=list(resolution.attempts),
                )
        except TenantNotFound as e:
            trail = ", ".join(f"{a.strategy}:{a.outcome.value}" for a in e.attempts)
            audit.warning("Tenant resolution failed", data={"identifiers": e.identifiers, "trail": trail})
            ack = await self._reject(trace, EventOutcome.REJECTED_TENANT, e.status_code, e.message, detail=trail)
            ack.body["identifiers"] = e.identifiers
            return ack

        trace.tenant_id = tenant.tenant_id
        trace.resolved_by = resolution.strategy
        bind_tenant(tenant.tenant_id)

        # --- Route ---
        category = event.category
        if category == EventCategory.LIFECYCLE:
            routed = await self._handle_lifecycle(event, tenant, trace)
        elif category == EventCategory.TOOL:
            routed = await self._handle_tool_calls(event, tenant, invocations, trace)
        elif category == EventCategory.EMERGENCY:
            routed = await self._handle_emergency(event, tenant, trace)
        else:
            logger.info("Ignoring unsupported event type: %s", event.event_type)
            routed = _Routed(
                body={"success": True, "result": {"ignored": True, "eventType": event.event_type}},
                outcome=EventOutcome.IGNORED,
                detail="unsupported event type",
            )

        # --- Record ---
        await self._append(trace, routed.outcome, 200, routed.detail)
        audit.info(
            "Webhook processed",
            data={
                "event_type": event.event_type,
                "outcome": routed.outcome.value,
                "resolved_by": resolution.strategy,
                "replay": trace.is_replay,
                "triage": len(trace.triage_results),
                "alerts": trace.alert_attempts,
            },
        )
        return Acknowledgment(200, routed.body)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_lifecycle(self, event: InboundEvent, tenant: Tenant, trace: _Trace) -> _Routed:
        if not event.call_id:
            logger.debug("Lifecycle event %s without call id; nothing to upsert", event.event_type)
            return _Routed(
                body={"success": True, "result": {"eventType": event.event_type, "recorded": False}},
                detail="no call id",
            )

        record = call_record_from_event(event, tenant.tenant_id, keep_transcript=self._keep_transcripts)
        is_new = await self._store(self._event_log.upsert_call(record))
        logger.info(
            "Call %s %s: status=%s new=%s replay=%s",
            self._cid(event.call_id), event.event_type, record.status, is_new, trace.is_replay,
        )
        return _Routed(body={
            "success": True,
            "result": {
                "eventType": event.event_type,
                "callId": event.call_id,
                "recorded": True,
                "newCall": is_new,
            },
        })

    async def _handle_tool_calls(
        self,
        event: InboundEvent,
        tenant: Tenant,
        invocations: List[ToolInvocation],
        trace: _Trace,
    ) -> _Routed:
        ctx = build_call_context(event, tenant)
        results = []
        for invocation in invocations:
            outcome = await self._tools.run(invocation, tenant, ctx)
            if outcome.triage is not None:
                trace.triage_results.append(outcome.triage)
            trace.alert_attempts += len(outcome.alerts)
            results.append({"toolCallId": invocation.tool_call_id, "result": outcome.result})

        logger.info("Ran %d tool call(s): %s", len(invocations), ", ".join(i.name for i in invocations))
        return _Routed(body={"results": results})

    async def _handle_emergency(self, event: InboundEvent, tenant: Tenant, trace: _Trace) -> _Routed:
        ctx = build_call_context(event, tenant)
        triage = self._classifier.score(ctx)
        trace.triage_results.append(triage)

        attempts = await self._fanout.dispatch(tenant, ctx, triage)
        trace.alert_attempts = len(attempts)

        logger.info(
            "Triage %s: score=%.3f level=%s language=%s immediate=%s alerts=%d",
            triage.triage_id,
            triage.score,
            triage.urgency_level.value,
            triage.detected_language,
            triage.requires_immediate_attention,
            len(attempts),
        )
        return _Routed(body={
            "success": True,
            "result": {
                "triageId": triage.triage_id,
                "score": round(triage.score, 4),
                "urgencyLevel": triage.urgency_level.value,
                "detectedLanguage": triage.detected_language,
                "requiresImmediateAttention": triage.requires_immediate_attention,
                "keywords": [h.phrase for h in triage.hits],
                "alertsSent": sum(1 for a in attempts if a.status == DeliveryStatus.SENT),
                "alertAttempts": len(attempts),
            },
        })

    # =========================================================================
    # Event Log
    # =========================================================================

    async def _append(self, trace: _Trace, outcome: EventOutcome, status_code: int, detail: Optional[str]) -> None:
        event = trace.event
        entry = EventLogEntry(
            entry_id=new_id("log"),
            event_type=event.event_type if event else None,
            category=event.category if event else EventCategory.UNKNOWN,
            outcome=outcome,
            status_code=status_code,
            tenant_id=trace.tenant_id,
            call_id=event.call_id if event else None,
            identifiers=dict(trace.identifiers),
            idempotency_key=event.idempotency_key if event else None,
            is_replay=trace.is_replay,
            resolved_by=trace.resolved_by,
            triage_results=tuple(trace.triage_results),
            alert_attempts=trace.alert_attempts,
            detail=detail,
        )
        await self._store(self._event_log.append(entry))

    async def _reject(
        self,
        trace: _Trace,
        outcome: EventOutcome,
        status_code: int,
        message: str,
        detail: Optional[str] = None,
    ) -> Acknowledgment:
        await self._append(trace, outcome, status_code, detail or message)
        return Acknowledgment(status_code, {"success": False, "error": message})

    async def _salvage_alerts(self, trace: _Trace, error: AlertRecordingFailure) -> None:
        """Keep the triage and retry the attempt write once; SMS already went out."""
        if error.triage is not None and all(t.triage_id != error.triage.triage_id for t in trace.triage_results):
            trace.triage_results.append(error.triage)
        trace.alert_attempts = max(trace.alert_attempts, len(error.attempts))
        try:
            await self._store(self._event_log.record_alert_attempts(error.attempts))
        except Exception:
            logger.exception("Retry of %d alert attempt write(s) failed", len(error.attempts))

    async def _record_failure(self, trace: _Trace, detail: str) -> None:
        try:
            await self._append(trace, EventOutcome.FAILED, 500, detail)
        except Exception:
            # Datastore is usually why we are here; the 500 still goes out
            logger.exception("Could not record failed webhook in event log")


# =============================================================================
# Factory Function
# =============================================================================

def create_dispatcher(
    settings: Settings,
    directory: Optional[TenantDirectory] = None,
    event_log: Optional[EventLog] = None,
    gateway=None,
    lexicon=None,
    clock=None,
) -> EventDispatcher:
    """
    Create a dispatcher with all collaborators built from settings.

    Collaborators passed in explicitly are used as-is; this is how the SQL
    adapters and test fixtures are injected. ``clock`` drives the time-of-day
    modifier and the availability tool.
    """
    from calltriage.core.event_log import create_event_log
    from calltriage.core.tenant_directory import create_tenant_directory
    from calltriage.services.classifier import create_classifier
    from calltriage.services.resolver import create_resolver
    from calltriage.services.sms import create_sms_gateway
    from calltriage.services.tools import create_tool_registry

    if directory is None:
        directory = create_tenant_directory(settings)
    if event_log is None:
        event_log = create_event_log(settings)
    if gateway is None:
        gateway = create_sms_gateway(settings)

    clock = clock or utcnow
    classifier = create_classifier(settings, lexicon, clock=clock)
    fanout = AlertFanout(
        gateway,
        event_log,
        max_concurrency=settings.alert_max_concurrency,
        timeout_seconds=settings.sms_timeout_seconds,
    )
    verifier = WebhookVerifier(settings.webhook_secret, max_age_seconds=settings.webhook_max_age_seconds)

    dispatcher = EventDispatcher(
        verifier=verifier,
        resolver=create_resolver(directory, event_log, settings.datastore_timeout_seconds),
        directory=directory,
        classifier=classifier,
        fanout=fanout,
        tools=create_tool_registry(classifier, fanout, clock=clock),
        event_log=event_log,
        datastore_timeout_seconds=settings.datastore_timeout_seconds,
        keep_transcripts=settings.store_raw_transcripts,
        anonymize_logs=settings.anonymize_logs,
    )
    logger.info(
        "EventDispatcher ready: verification=%s sms=%s tools=%s",
        "on" if verifier.enabled else "off",
        gateway.provider,
        ",".join(dispatcher.tools.names),
    )
    return dispatcher
