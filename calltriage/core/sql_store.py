"""
CallTriage - SQL Datastore Adapters

SQLAlchemy implementations of TenantDirectory and EventLog. Each call opens
its own short session, so adapters are safe to share across requests.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from calltriage.core.event_log import merge_call_record, summarize
from calltriage.core.exceptions import DatastoreError
from calltriage.core.orm import (
    AlertAttemptModel,
    AssistantModel,
    CallRecordModel,
    EventLogModel,
    TechnicianModel,
    TenantModel,
)
from calltriage.core.tenant_directory import check_assistant_ownership
from calltriage.core.types import (
    AlertAttempt,
    AlertTarget,
    Assistant,
    CallRecord,
    DeliveryStatus,
    EventCategory,
    EventLogEntry,
    EventLogSummary,
    EventOutcome,
    TechnicianContact,
    Tenant,
    TriageResult,
)
from calltriage.telephony.privacy import normalize_phone_number

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every timestamp in this system is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _SQLAdapter:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatastoreError(f"{type(e).__name__}: {e}") from e


# =============================================================================
# Tenant Directory
# =============================================================================

class SQLTenantDirectory(_SQLAdapter):
    """TenantDirectory over the tenants/assistants/technician_contacts tables."""

    async def add_tenant(self, tenant: Tenant) -> None:
        """Insert or replace a tenant with its assistants and technicians."""
        check_assistant_ownership(tenant)
        async with self._session() as session:
            await session.execute(delete(AssistantModel).where(AssistantModel.tenant_id == tenant.tenant_id))
            await session.execute(delete(TechnicianModel).where(TechnicianModel.tenant_id == tenant.tenant_id))
            await session.merge(TenantModel(
                tenant_id=tenant.tenant_id,
                name=tenant.name,
                industry_code=tenant.industry_code,
                primary_language=tenant.primary_language,
                supported_languages=list(tenant.supported_languages),
                customer_sms_consent=tenant.customer_sms_consent,
                urgency_threshold=tenant.urgency_threshold,
                business_phone=tenant.business_phone,
                timezone=tenant.timezone,
                business_hours_start=tenant.business_hours_start,
                business_hours_end=tenant.business_hours_end,
            ))
            for assistant in tenant.assistants:
                session.add(AssistantModel(
                    assistant_id=assistant.assistant_id,
                    tenant_id=tenant.tenant_id,
                    phone_number=assistant.phone_number,
                    phone_normalized=normalize_phone_number(assistant.phone_number),
                    is_active=assistant.is_active,
                ))
            for position, tech in enumerate(tenant.technicians):
                session.add(TechnicianModel(
                    tenant_id=tenant.tenant_id,
                    name=tech.name,
                    phone=tech.phone,
                    position=position,
                ))

    async def set_assistant_active(self, assistant_id: str, active: bool) -> None:
        async with self._session() as session:
            model = await session.get(AssistantModel, assistant_id)
            if model is None:
                raise KeyError(assistant_id)
            model.is_active = active

    async def find_active_assistant(self, assistant_id: str) -> Optional[Assistant]:
        stmt = select(AssistantModel).where(
            AssistantModel.assistant_id == assistant_id,
            AssistantModel.is_active.is_(True),
        )
        async with self._session() as session:
            model = (await session.execute(stmt)).scalar_one_or_none()
        return self._to_assistant(model) if model else None

    async def find_active_assistant_by_phone(self, phone_number: str) -> Optional[Assistant]:
        wanted = normalize_phone_number(phone_number)
        if not wanted:
            return None
        stmt = (
            select(AssistantModel)
            .where(AssistantModel.phone_normalized == wanted, AssistantModel.is_active.is_(True))
            .order_by(AssistantModel.created_at)
            .limit(1)
        )
        async with self._session() as session:
            model = (await session.execute(stmt)).scalar_one_or_none()
        return self._to_assistant(model) if model else None

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with self._session() as session:
            model = await session.get(TenantModel, tenant_id)
            if model is None:
                return None
            assistants = (await session.execute(
                select(AssistantModel).where(AssistantModel.tenant_id == tenant_id)
            )).scalars().all()
            technicians = (await session.execute(
                select(TechnicianModel)
                .where(TechnicianModel.tenant_id == tenant_id)
                .order_by(TechnicianModel.position)
            )).scalars().all()

        return Tenant(
            tenant_id=model.tenant_id,
            name=model.name,
            industry_code=model.industry_code,
            primary_language=model.primary_language,
            supported_languages=tuple(model.supported_languages or [model.primary_language]),
            technicians=[TechnicianContact(t.name, t.phone) for t in technicians],
            assistants=[self._to_assistant(a) for a in assistants],
            customer_sms_consent=model.customer_sms_consent,
            urgency_threshold=model.urgency_threshold,
            business_phone=model.business_phone,
            timezone=model.timezone,
            business_hours_start=model.business_hours_start,
            business_hours_end=model.business_hours_end,
        )

    @staticmethod
    def _to_assistant(model: AssistantModel) -> Assistant:
        return Assistant(
            assistant_id=model.assistant_id,
            tenant_id=model.tenant_id,
            phone_number=model.phone_number,
            is_active=model.is_active,
        )


# =============================================================================
# Event Log
# =============================================================================

class SQLEventLog(_SQLAdapter):
    """EventLog over the event_log/alert_attempts/call_records tables."""

    async def append(self, entry: EventLogEntry) -> None:
        async with self._session() as session:
            session.add(EventLogModel(
                entry_id=entry.entry_id,
                event_type=entry.event_type,
                category=entry.category.value,
                outcome=entry.outcome.value,
                status_code=entry.status_code,
                tenant_id=entry.tenant_id,
                call_id=entry.call_id,
                identifiers=dict(entry.identifiers),
                idempotency_key=entry.idempotency_key,
                is_replay=entry.is_replay,
                resolved_by=entry.resolved_by,
                triage=[t.to_dict() for t in entry.triage_results],
                alert_attempts=entry.alert_attempts,
                detail=entry.detail,
                received_at=entry.received_at,
            ))

    async def has_idempotency_key(self, key: str) -> bool:
        stmt = select(EventLogModel.entry_id).where(EventLogModel.idempotency_key == key).limit(1)
        async with self._session() as session:
            return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def record_alert_attempts(self, attempts: List[AlertAttempt]) -> None:
        if not attempts:
            return
        async with self._session() as session:
            session.add_all([
                AlertAttemptModel(
                    attempt_id=a.attempt_id,
                    triage_id=a.triage_id,
                    tenant_id=a.tenant_id,
                    call_id=a.call_id,
                    target=a.target.value,
                    recipient=a.recipient,
                    status=a.status.value,
                    channel=a.channel,
                    provider_message_id=a.provider_message_id,
                    error=a.error,
                    created_at=a.created_at,
                )
                for a in attempts
            ])

    async def find_tenant_by_call_id(self, call_id: str) -> Optional[str]:
        async with self._session() as session:
            record = await session.get(CallRecordModel, call_id)
            if record is not None:
                return record.tenant_id
            stmt = (
                select(EventLogModel.tenant_id)
                .where(EventLogModel.call_id == call_id, EventLogModel.tenant_id.is_not(None))
                .order_by(EventLogModel.received_at)
                .limit(1)
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def upsert_call(self, record: CallRecord) -> bool:
        try:
            return await self._upsert_call(record)
        except DatastoreError as e:
            # Concurrent insert of the same call id; merge into the winner
            if not isinstance(e.__cause__, IntegrityError):
                raise
            return await self._upsert_call(record)

    async def _upsert_call(self, record: CallRecord) -> bool:
        async with self._session() as session:
            model = await session.get(CallRecordModel, record.call_id)
            if model is None:
                session.add(CallRecordModel(
                    call_id=record.call_id,
                    tenant_id=record.tenant_id,
                    status=record.status,
                    language=record.language,
                    started_at=record.started_at,
                    ended_at=record.ended_at,
                    ended_reason=record.ended_reason,
                    last_event_type=record.last_event_type,
                    transcript=record.transcript,
                    updated_at=record.updated_at,
                ))
                return True

            merged = merge_call_record(self._to_call(model), record)
            model.status = merged.status
            model.language = merged.language
            model.started_at = merged.started_at
            model.ended_at = merged.ended_at
            model.ended_reason = merged.ended_reason
            model.last_event_type = merged.last_event_type
            model.transcript = merged.transcript
            model.updated_at = merged.updated_at
            return False

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        async with self._session() as session:
            model = await session.get(CallRecordModel, call_id)
        return self._to_call(model) if model else None

    async def recent_entries(self, limit: int = 100, tenant_id: Optional[str] = None) -> List[EventLogEntry]:
        if limit <= 0:
            return []
        stmt = select(EventLogModel).order_by(EventLogModel.received_at.desc()).limit(limit)
        if tenant_id is not None:
            stmt = stmt.where(EventLogModel.tenant_id == tenant_id)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._to_entry(r) for r in rows]

    async def alert_attempts(
        self,
        triage_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> List[AlertAttempt]:
        stmt = select(AlertAttemptModel).order_by(AlertAttemptModel.created_at)
        if triage_id is not None:
            stmt = stmt.where(AlertAttemptModel.triage_id == triage_id)
        if tenant_id is not None:
            stmt = stmt.where(AlertAttemptModel.tenant_id == tenant_id)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._to_attempt(r) for r in rows]

    async def summary(self, tenant_id: Optional[str] = None) -> EventLogSummary:
        entries_stmt = select(EventLogModel)
        if tenant_id is not None:
            entries_stmt = entries_stmt.where(EventLogModel.tenant_id == tenant_id)
        async with self._session() as session:
            entries = [self._to_entry(r) for r in (await session.execute(entries_stmt)).scalars().all()]
        attempts = await self.alert_attempts(tenant_id=tenant_id)
        return summarize(entries, attempts)

    async def clear(self) -> None:
        async with self._session() as session:
            await session.execute(delete(AlertAttemptModel))
            await session.execute(delete(EventLogModel))
            await session.execute(delete(CallRecordModel))
        logger.info("Event log cleared")

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_call(model: CallRecordModel) -> CallRecord:
        return CallRecord(
            call_id=model.call_id,
            tenant_id=model.tenant_id,
            status=model.status,
            language=model.language,
            started_at=_aware(model.started_at),
            ended_at=_aware(model.ended_at),
            ended_reason=model.ended_reason,
            last_event_type=model.last_event_type,
            transcript=model.transcript,
            updated_at=_aware(model.updated_at),
        )

    @staticmethod
    def _to_entry(model: EventLogModel) -> EventLogEntry:
        return EventLogEntry(
            entry_id=model.entry_id,
            event_type=model.event_type,
            category=EventCategory(model.category),
            outcome=EventOutcome(model.outcome),
            status_code=model.status_code,
            tenant_id=model.tenant_id,
            call_id=model.call_id,
            identifiers=dict(model.identifiers or {}),
            idempotency_key=model.idempotency_key,
            is_replay=model.is_replay,
            resolved_by=model.resolved_by,
            triage_results=tuple(TriageResult.from_dict(t) for t in model.triage or []),
            alert_attempts=model.alert_attempts,
            detail=model.detail,
            received_at=_aware(model.received_at),
        )

    @staticmethod
    def _to_attempt(model: AlertAttemptModel) -> AlertAttempt:
        return AlertAttempt(
            attempt_id=model.attempt_id,
            triage_id=model.triage_id,
            tenant_id=model.tenant_id,
            call_id=model.call_id,
            target=AlertTarget(model.target),
            recipient=model.recipient,
            status=DeliveryStatus(model.status),
            channel=model.channel,
            provider_message_id=model.provider_message_id,
            error=model.error,
            created_at=_aware(model.created_at),
        )
