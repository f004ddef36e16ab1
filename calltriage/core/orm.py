"""
CallTriage - ORM Models

SQLAlchemy models backing the SQL tenant directory and event log.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calltriage.core.database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Tenant Directory
# =============================================================================

class TenantModel(Base):
    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    industry_code: Mapped[str] = mapped_column(String(64), nullable=False, default="generic")
    primary_language: Mapped[str] = mapped_column(String(8), nullable=False, default="en")
    supported_languages: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    customer_sms_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    urgency_threshold: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    business_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    business_hours_start: Mapped[int] = mapped_column(Integer, nullable=False, default=8)
    business_hours_end: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class AssistantModel(Base):
    __tablename__ = "assistants"

    assistant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False, index=True
    )
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # E.164, see telephony.privacy.normalize_phone_number
    phone_normalized: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class TechnicianModel(Base):
    __tablename__ = "technician_contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.tenant_id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# =============================================================================
# Event Log
# =============================================================================

class EventLogModel(Base):
    __tablename__ = "event_log"

    entry_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    event_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    call_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    identifiers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    is_replay: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    triage: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    alert_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, index=True)


class AlertAttemptModel(Base):
    __tablename__ = "alert_attempts"

    attempt_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    triage_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    call_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    target: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="sms")
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class CallRecordModel(Base):
    __tablename__ = "call_records"

    call_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    language: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_reason: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_event_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
