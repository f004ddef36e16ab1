"""
CallTriage - Tool Invocation Handlers

Handlers for function calls the voice assistant makes mid-call. Each
handler returns a plain string that the platform reads back to the caller;
the dispatcher wraps it as {"toolCallId": ..., "result": ...}.

Registered tools:
    - check_emergency / check_emergency_multilingual: score the caller's
      description and alert technicians when it crosses the threshold
    - check_availability: answer from the tenant's business hours
    - send_sms_notification: text the caller a templated confirmation,
      reminder or notice
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calltriage.core.exceptions import DatastoreError
from calltriage.core.types import AlertAttempt, CallContext, Tenant, TriageResult, utcnow
from calltriage.services.alerts import AlertFanout
from calltriage.services.classifier import UrgencyClassifier
from calltriage.services.language import normalize_language_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolInvocation:
    tool_call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolOutcome:
    """Result string plus any triage/alert records the tool produced."""
    result: str
    triage: Optional[TriageResult] = None
    alerts: List[AlertAttempt] = field(default_factory=list)


@runtime_checkable
class ToolHandler(Protocol):
    @abstractmethod
    async def run(self, invocation: ToolInvocation, tenant: Tenant, ctx: CallContext) -> ToolOutcome:
        ...


# =============================================================================
# Emergency Check
# =============================================================================

_EMERGENCY_REPLIES = {
    "en": {
        "alerted": (
            "EMERGENCY CONFIRMED: {level} priority (score {score:.2f}). "
            "{sent} of {total} on-call contacts alerted. A technician will arrive within {eta}."
        ),
        "not_alerted": (
            "EMERGENCY CONFIRMED: {level} priority (score {score:.2f}), "
            "but no on-call contact could be reached. Transfer the caller to the business line."
        ),
        "routine": (
            "Not an emergency: {level} priority (score {score:.2f}). "
            "Offer the caller a standard appointment."
        ),
    },
    "es": {
        "alerted": (
            "EMERGENCIA CONFIRMADA: prioridad {level} (puntuación {score:.2f}). "
            "Se alertó a {sent} de {total} contactos de guardia. Un técnico llegará en {eta}."
        ),
        "not_alerted": (
            "EMERGENCIA CONFIRMADA: prioridad {level} (puntuación {score:.2f}), "
            "pero no se pudo contactar a nadie de guardia. Transfiera la llamada a la línea del negocio."
        ),
        "routine": (
            "No es una emergencia: prioridad {level} (puntuación {score:.2f}). "
            "Ofrezca al cliente una cita normal."
        ),
    },
}


def _first(arguments: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = arguments.get(key)
        if value not in (None, ""):
            return value
    return None


class EmergencyCheckTool:
    """Scores the caller's description and fans out alerts when urgent."""

    def __init__(self, classifier: UrgencyClassifier, fanout: AlertFanout):
        self._classifier = classifier
        self._fanout = fanout

    def build_context(self, invocation: ToolInvocation, ctx: CallContext) -> CallContext:
        args = invocation.arguments
        description = _first(args, "issue_description", "description", "transcript", "issue")
        temperature = _first(args, "temperature", "outside_temperature")
        try:
            temperature_f = float(temperature) if temperature is not None else ctx.outside_temperature_f
        except (TypeError, ValueError):
            temperature_f = ctx.outside_temperature_f

        return replace(
            ctx,
            transcript=str(description) if description is not None else ctx.transcript,
            customer_name=_first(args, "customer_name", "name") or ctx.customer_name,
            customer_phone=_first(args, "customer_phone", "phone", "phone_number") or ctx.customer_phone,
            customer_address=_first(args, "address", "customer_address") or ctx.customer_address,
            language_hint=_first(args, "language", "detected_language") or ctx.language_hint,
            outside_temperature_f=temperature_f,
        )

    async def run(self, invocation: ToolInvocation, tenant: Tenant, ctx: CallContext) -> ToolOutcome:
        call_ctx = self.build_context(invocation, ctx)
        triage = self._classifier.score(call_ctx)
        alerts = await self._fanout.dispatch(tenant, call_ctx, triage)

        language = triage.detected_language if triage.detected_language in _EMERGENCY_REPLIES else "en"
        replies = _EMERGENCY_REPLIES[language]

        if not triage.requires_immediate_attention:
            key = "routine"
        elif any(a.status.value == "sent" for a in alerts):
            key = "alerted"
        else:
            key = "not_alerted"

        result = replies[key].format(
            level=triage.urgency_level.value.upper(),
            score=triage.score,
            sent=sum(1 for a in alerts if a.status.value == "sent"),
            total=len(alerts),
            eta=triage.estimated_arrival,
        )
        return ToolOutcome(result=result, triage=triage, alerts=alerts)


# =============================================================================
# Availability
# =============================================================================

_AVAILABILITY_REPLIES = {
    "en": {
        "open": "We are open now until {end:02d}:00 ({tz}). A technician can be scheduled today.",
        "closed": "We are closed right now. The next opening is {day} at {start:02d}:00 ({tz}).",
        "today": "today",
        "tomorrow": "tomorrow",
    },
    "es": {
        "open": "Estamos abiertos hasta las {end:02d}:00 ({tz}). Podemos programar un técnico hoy.",
        "closed": "Ahora estamos cerrados. Abrimos {day} a las {start:02d}:00 ({tz}).",
        "today": "hoy",
        "tomorrow": "mañana",
    },
}


class AvailabilityTool:
    """
    Answers whether the business is open at the requested (or current) time.

    Args:
        clock: Returns the current aware UTC datetime; injectable for tests
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    @staticmethod
    def _zone(tenant: Tenant) -> ZoneInfo:
        try:
            return ZoneInfo(tenant.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r for tenant %s, using UTC", tenant.timezone, tenant.tenant_id)
            return ZoneInfo("UTC")

    def _requested_time(self, invocation: ToolInvocation, zone: ZoneInfo) -> datetime:
        raw = _first(invocation.arguments, "requested_time", "datetime", "time")
        if raw:
            try:
                parsed = datetime.fromisoformat(str(raw))
                return parsed.astimezone(zone) if parsed.tzinfo else parsed.replace(tzinfo=zone)
            except ValueError:
                logger.debug("Unparseable requested_time %r, using current time", raw)
        return self._clock().astimezone(zone)

    async def run(self, invocation: ToolInvocation, tenant: Tenant, ctx: CallContext) -> ToolOutcome:
        zone = self._zone(tenant)
        at = self._requested_time(invocation, zone)

        hinted = normalize_language_code(_first(invocation.arguments, "language") or ctx.language_hint)
        language = hinted if hinted in _AVAILABILITY_REPLIES else (
            tenant.primary_language if tenant.primary_language in _AVAILABILITY_REPLIES else "en"
        )
        replies = _AVAILABILITY_REPLIES[language]
        start, end = tenant.business_hours_start, tenant.business_hours_end

        if start <= at.hour < end:
            return ToolOutcome(result=replies["open"].format(end=end, tz=zone.key))

        if at.hour < start:
            day = replies["today"]
        else:
            day = replies["tomorrow"]
        return ToolOutcome(result=replies["closed"].format(day=day, start=start, tz=zone.key))


# =============================================================================
# Customer SMS Notification
# =============================================================================

NOTIFICATION_TYPES = (
    "appointment_confirmation",
    "appointment_reminder",
    "emergency_alert",
    "general_notification",
)

_NOTIFICATION_TEMPLATES = {
    "en": {
        "appointment_confirmation": "{business}: your appointment is confirmed. {details}Call {phone} to make changes.",
        "appointment_reminder": "{business}: reminder of your upcoming appointment. {details}Call {phone} to reschedule.",
        "emergency_alert": "URGENT from {business}: {details}Call {phone} right away.",
        "general_notification": "{business}: {details}Questions? Call {phone}.",
    },
    "es": {
        "appointment_confirmation": "{business}: su cita está confirmada. {details}Llame al {phone} para cambios.",
        "appointment_reminder": "{business}: le recordamos su próxima cita. {details}Llame al {phone} para reprogramar.",
        "emergency_alert": "URGENTE de {business}: {details}Llame al {phone} de inmediato.",
        "general_notification": "{business}: {details}¿Preguntas? Llame al {phone}.",
    },
}

_NOTIFICATION_REPLIES = {
    "en": {
        "sent": "SMS sent to the caller ({recipient}).",
        "skipped": "SMS not sent: {reason}.",
        "failed": "SMS could not be delivered right now. Give the caller the details verbally.",
        "no_phone": "Error: no phone number to send the SMS to. Ask the caller for a mobile number.",
        "bad_type": "Error: unknown message_type '{value}'.",
    },
    "es": {
        "sent": "SMS enviado al cliente ({recipient}).",
        "skipped": "SMS no enviado: {reason}.",
        "failed": "No se pudo enviar el SMS ahora. Dé los detalles al cliente de forma verbal.",
        "no_phone": "Error: no hay número para enviar el SMS. Pida al cliente un número móvil.",
        "bad_type": "Error: message_type desconocido '{value}'.",
    },
}


class SMSNotificationTool:
    """
    Sends the caller one templated SMS in their language.

    The number comes from the phone_number argument, else the caller's
    number on the call. Customer SMS consent on the tenant still applies.
    """

    def __init__(self, fanout: AlertFanout):
        self._fanout = fanout

    @staticmethod
    def _language(invocation: ToolInvocation, tenant: Tenant, ctx: CallContext) -> str:
        hinted = normalize_language_code(_first(invocation.arguments, "language") or ctx.language_hint)
        if hinted in _NOTIFICATION_TEMPLATES:
            return hinted
        return tenant.primary_language if tenant.primary_language in _NOTIFICATION_TEMPLATES else "en"

    async def run(self, invocation: ToolInvocation, tenant: Tenant, ctx: CallContext) -> ToolOutcome:
        args = invocation.arguments
        language = self._language(invocation, tenant, ctx)
        replies = _NOTIFICATION_REPLIES[language]

        message_type = str(_first(args, "message_type", "type") or "general_notification")
        if message_type not in NOTIFICATION_TYPES:
            return ToolOutcome(result=replies["bad_type"].format(value=message_type))

        number = _first(args, "phone_number", "phone", "customer_phone") or ctx.customer_phone
        if not number:
            return ToolOutcome(result=replies["no_phone"])

        details = _first(args, "details", "message")
        body = _NOTIFICATION_TEMPLATES[language][message_type].format(
            business=tenant.name,
            details=f"{str(details).strip()} " if details else "",
            phone=tenant.business_phone or tenant.name,
        )

        attempt = await self._fanout.notify(tenant, replace(ctx, customer_phone=str(number)), str(number), body)
        logger.info(
            "SMS notification %s: type=%s urgency=%s",
            attempt.status.value, message_type, _first(args, "urgency_level") or "-",
        )

        if attempt.status.value == "sent":
            result = replies["sent"].format(recipient=attempt.recipient)
        elif attempt.status.value == "skipped":
            result = replies["skipped"].format(reason=attempt.error)
        else:
            result = replies["failed"]
        return ToolOutcome(result=result, alerts=[attempt])


# =============================================================================
# Registry
# =============================================================================

class ToolRegistry:
    """Routes tool invocations by function name."""

    def __init__(self):
        self._handlers: Dict[str, ToolHandler] = {}

    def register(self, handler: ToolHandler, *names: str) -> None:
        for name in names:
            self._handlers[name] = handler

    @property
    def names(self) -> List[str]:
        return sorted(self._handlers)

    async def run(self, invocation: ToolInvocation, tenant: Tenant, ctx: CallContext) -> ToolOutcome:
        """
        Run one tool. Unknown tools and handler errors become error strings
        so the platform still receives a result for every tool call id.
        """
        handler = self._handlers.get(invocation.name)
        if handler is None:
            logger.warning("Unknown tool requested: %s", invocation.name)
            return ToolOutcome(result=f"Error: unknown tool '{invocation.name}'")

        try:
            return await handler.run(invocation, tenant, ctx)
        except DatastoreError:
            raise
        except Exception as e:
            logger.exception("Tool %s failed", invocation.name)
            return ToolOutcome(result=f"Error: {invocation.name} failed ({type(e).__name__})")


def create_tool_registry(
    classifier: UrgencyClassifier,
    fanout: AlertFanout,
    clock: Callable[[], datetime] = utcnow,
) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(EmergencyCheckTool(classifier, fanout), "check_emergency", "check_emergency_multilingual")
    registry.register(AvailabilityTool(clock), "check_availability")
    registry.register(SMSNotificationTool(fanout), "send_sms_notification")
    return registry
