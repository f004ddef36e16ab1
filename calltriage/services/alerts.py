"""
CallTriage - Alert Fan-out

Sends technician SMS alerts and an optional customer confirmation for a
triage result that requires immediate attention, and single customer
notifications requested by the assistant mid-call.

Delivery model:
    - One attempt per configured technician, plus one customer confirmation
      when the tenant has consented to that channel
    - Sends run concurrently, bounded per event by a semaphore
    - Every send carries a timeout; a timeout is a failed attempt
    - One failed recipient never stops the others; each outcome is recorded
    - Attempts are written to the event log before dispatch() returns; when
      that write fails, AlertRecordingFailure carries them to the caller
    - A timed-out send may still be delivered late by the provider; the
      attempt is recorded as failed with that noted in its error
    - Nothing is retried here
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from calltriage.core.event_log import EventLog
from calltriage.core.exceptions import AlertRecordingFailure
from calltriage.core.logging import get_logger
from calltriage.core.types import (
    AlertAttempt,
    AlertTarget,
    CallContext,
    DeliveryStatus,
    Tenant,
    TriageResult,
    new_id,
)
from calltriage.services.sms import SMSGateway
from calltriage.telephony.privacy import mask_phone_number, validate_phone_number

logger = logging.getLogger(__name__)
audit = get_logger(f"{__name__}.audit")


# =============================================================================
# Message Templates
# =============================================================================

FALLBACK_LANGUAGE = "en"

TECHNICIAN_TEMPLATES = {
    "en": (
        "URGENT: {industry} emergency from {customer} at {address}. "
        "Issue: {issue}. Contact: {customer_phone}. Business: {business}. "
        "Respond immediately."
    ),
    "es": (
        "URGENTE: Emergencia de {industry} de {customer} en {address}. "
        "Problema: {issue}. Contacto: {customer_phone}. Negocio: {business}. "
        "Responda de inmediato."
    ),
}

CUSTOMER_TEMPLATES = {
    "en": (
        "URGENT: Emergency {industry} service dispatched. Technician will "
        "arrive within {eta}. Call {business_phone} for updates. "
        "{business} is here to help."
    ),
    "es": (
        "URGENTE: Servicio de emergencia de {industry} despachado. El técnico "
        "llegará en {eta}. Llame al {business_phone} para actualizaciones. "
        "{business} está aquí para ayudarle."
    ),
}

INDUSTRY_LABELS = {
    "en": {
        "hvac": "HVAC",
        "plumbing": "plumbing",
        "electrical": "electrical",
        "property_management": "property maintenance",
    },
    "es": {
        "hvac": "climatización",
        "plumbing": "plomería",
        "electrical": "electricidad",
        "property_management": "mantenimiento de propiedad",
    },
}

PLACEHOLDERS = {
    "en": {"customer": "caller", "unknown": "not provided", "issue": "urgent service request"},
    "es": {"customer": "cliente", "unknown": "no indicado", "issue": "solicitud de servicio urgente"},
}


def message_language(triage: TriageResult, tenant: Tenant) -> str:
    """Detected language, else tenant primary, else English."""
    for candidate in (triage.detected_language, tenant.primary_language):
        if candidate in TECHNICIAN_TEMPLATES:
            return candidate
    return FALLBACK_LANGUAGE


def _localize_eta(eta: str, language: str) -> str:
    if language == "es":
        return eta.replace("minutes", "minutos").replace("hours", "horas")
    return eta


def render_technician_message(tenant: Tenant, ctx: CallContext, triage: TriageResult, language: str) -> str:
    words = PLACEHOLDERS[language]
    label = INDUSTRY_LABELS[language].get(tenant.industry_code, tenant.industry_code.replace("_", " "))
    issue = ", ".join(h.phrase for h in triage.hits[:3]) or words["issue"]
    return TECHNICIAN_TEMPLATES[language].format(
        industry=label.upper() if language == "en" else label,
        customer=ctx.customer_name or words["customer"],
        address=ctx.customer_address or words["unknown"],
        issue=issue,
        customer_phone=ctx.customer_phone or words["unknown"],
        business=tenant.name,
    )


def render_customer_message(tenant: Tenant, triage: TriageResult, language: str) -> str:
    words = PLACEHOLDERS[language]
    label = INDUSTRY_LABELS[language].get(tenant.industry_code, tenant.industry_code.replace("_", " "))
    return CUSTOMER_TEMPLATES[language].format(
        industry=label,
        eta=_localize_eta(triage.estimated_arrival, language),
        business_phone=tenant.business_phone or words["unknown"],
        business=tenant.name,
    )


# =============================================================================
# Fan-out
# =============================================================================

@dataclass(frozen=True)
class PlannedAlert:
    target: AlertTarget
    number: Optional[str]
    body: str


@dataclass(frozen=True)
class _Origin:
    """What an attempt belongs to; triage_id is None for notifications."""
    triage_id: Optional[str]
    tenant_id: str
    call_id: Optional[str]


class AlertFanout:
    """
    Concurrent, failure-isolated SMS fan-out.

    Args:
        gateway: SMS gateway
        event_log: Where attempts are recorded
        max_concurrency: Maximum in-flight sends per event
        timeout_seconds: Per-send timeout
    """

    def __init__(
        self,
        gateway: SMSGateway,
        event_log: EventLog,
        max_concurrency: int = 5,
        timeout_seconds: float = 10.0,
    ):
        self._gateway = gateway
        self._event_log = event_log
        self._max_concurrency = max(1, max_concurrency)
        self._timeout = timeout_seconds

    def plan(self, tenant: Tenant, ctx: CallContext, triage: TriageResult) -> List[PlannedAlert]:
        """One entry per technician, plus the customer when consented."""
        language = message_language(triage, tenant)
        tech_body = render_technician_message(tenant, ctx, triage, language)

        planned = [PlannedAlert(AlertTarget.TECHNICIAN, tech.phone, tech_body) for tech in tenant.technicians]
        if tenant.customer_sms_consent:
            planned.append(PlannedAlert(
                AlertTarget.CUSTOMER,
                ctx.customer_phone,
                render_customer_message(tenant, triage, language),
            ))
        return planned

    async def dispatch(self, tenant: Tenant, ctx: CallContext, triage: TriageResult) -> List[AlertAttempt]:
        """
        Send all alerts for a triage result and record every attempt.

        Returns:
            One AlertAttempt per planned recipient, in plan order

        Raises:
            AlertRecordingFailure: messages went out but the attempts could
                not be written to the event log
        """
        if not triage.requires_immediate_attention:
            return []

        planned = self.plan(tenant, ctx, triage)
        origin = _Origin(triage.triage_id, triage.tenant_id, triage.call_id)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        results = await asyncio.gather(
            *(self._deliver(semaphore, origin, alert) for alert in planned),
            return_exceptions=True,
        )

        attempts: List[AlertAttempt] = []
        for alert, result in zip(planned, results):
            if isinstance(result, AlertAttempt):
                attempts.append(result)
            else:
                # _deliver captures delivery errors itself; this is a bug path
                logger.error("Alert task crashed for %s: %r", alert.target.value, result)
                attempts.append(self._attempt(origin, alert, DeliveryStatus.FAILED, error=repr(result)))

        await self._record(attempts, triage)

        sent = sum(1 for a in attempts if a.status == DeliveryStatus.SENT)
        audit.info(
            "Alert fan-out complete",
            data={
                "triage_id": triage.triage_id,
                "attempts": len(attempts),
                "sent": sent,
                "failed": sum(1 for a in attempts if a.status == DeliveryStatus.FAILED),
                "skipped": sum(1 for a in attempts if a.status == DeliveryStatus.SKIPPED),
            },
        )
        return attempts

    async def notify(self, tenant: Tenant, ctx: CallContext, number: Optional[str], body: str) -> AlertAttempt:
        """
        Send one customer notification outside any triage and record it.

        Skipped without sending when the tenant has not consented to
        customer SMS or the number is not valid.

        Raises:
            AlertRecordingFailure: as for dispatch()
        """
        alert = PlannedAlert(AlertTarget.CUSTOMER, number, body)
        origin = _Origin(None, tenant.tenant_id, ctx.call_id)

        if not tenant.customer_sms_consent:
            attempt = self._attempt(origin, alert, DeliveryStatus.SKIPPED, error="customer SMS not enabled")
        else:
            attempt = await self._deliver(asyncio.Semaphore(1), origin, alert)

        await self._record([attempt], None)
        audit.info(
            "Customer notification",
            data={"tenant_id": tenant.tenant_id, "status": attempt.status.value, "recipient": attempt.recipient},
        )
        return attempt

    async def _record(self, attempts: List[AlertAttempt], triage: Optional[TriageResult]) -> None:
        try:
            await asyncio.wait_for(self._event_log.record_alert_attempts(attempts), timeout=self._timeout)
        except Exception as e:
            reference = triage.triage_id if triage is not None else "notification"
            logger.error("Could not record %d alert attempt(s) for %s: %r", len(attempts), reference, e)
            raise AlertRecordingFailure(
                f"Alert attempts not recorded: {type(e).__name__}",
                triage=triage,
                attempts=attempts,
            ) from e

    async def _deliver(self, semaphore: asyncio.Semaphore, origin: _Origin, alert: PlannedAlert) -> AlertAttempt:
        if not validate_phone_number(alert.number):
            return self._attempt(origin, alert, DeliveryStatus.SKIPPED, error="no valid phone number")

        async with semaphore:
            try:
                receipt = await asyncio.wait_for(
                    self._gateway.send(alert.number, alert.body),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("SMS to %s timed out after %.1fs", mask_phone_number(alert.number), self._timeout)
                return self._attempt(
                    origin, alert, DeliveryStatus.FAILED,
                    error=f"timeout after {self._timeout}s (provider may still deliver late)",
                )
            except Exception as e:
                logger.warning("SMS to %s failed: %s", mask_phone_number(alert.number), e)
                return self._attempt(origin, alert, DeliveryStatus.FAILED, error=str(e))

        return self._attempt(origin, alert, DeliveryStatus.SENT, message_id=receipt.message_id)

    @staticmethod
    def _attempt(
        origin: _Origin,
        alert: PlannedAlert,
        status: DeliveryStatus,
        error: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> AlertAttempt:
        return AlertAttempt(
            attempt_id=new_id("alr"),
            triage_id=origin.triage_id,
            tenant_id=origin.tenant_id,
            call_id=origin.call_id,
            target=alert.target,
            recipient=mask_phone_number(alert.number),
            status=status,
            provider_message_id=message_id,
            error=error,
        )

