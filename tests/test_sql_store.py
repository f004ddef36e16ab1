"""
CallTriage - SQL Datastore Tests

Tests for the SQLAlchemy tenant directory and event log, run against a
temporary SQLite database through aiosqlite.
These tests verify:
- Tenant seeding, assistant lookups and activation
- Event log entries, idempotency keys and call-id resolution
- Call record upserts and alert attempts
- A full webhook round trip over the SQL adapters

Run with: pytest tests/test_sql_store.py -v
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from calltriage.config import Settings
from calltriage.core import database
from calltriage.core.dispatcher import create_dispatcher
from calltriage.core.exceptions import ConfigurationError
from calltriage.core.sql_store import SQLEventLog, SQLTenantDirectory
from calltriage.core.types import (
    AlertAttempt,
    AlertTarget,
    Assistant,
    CallRecord,
    DeliveryStatus,
    EventCategory,
    EventLogEntry,
    EventOutcome,
    Tenant,
    new_id,
    utcnow,
)
from calltriage.services.sms import DummySMSGateway

from conftest import ACME_LINE, RIO_LINE


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/calltriage.db")
    database.init_database(settings)
    await database.create_tables()
    yield database.get_session_maker()
    await database.close_database()


@pytest_asyncio.fixture
async def sql_directory(session_maker, tenants) -> SQLTenantDirectory:
    directory = SQLTenantDirectory(session_maker)
    for tenant in tenants:
        await directory.add_tenant(tenant)
    return directory


@pytest.fixture
def sql_event_log(session_maker) -> SQLEventLog:
    return SQLEventLog(session_maker)


def _entry(seconds_ago: int, tenant_id="acme-hvac", call_id="call-1", key=None) -> EventLogEntry:
    return EventLogEntry(
        entry_id=new_id("log"),
        event_type="call-started",
        category=EventCategory.LIFECYCLE,
        outcome=EventOutcome.PROCESSED,
        status_code=200,
        tenant_id=tenant_id,
        call_id=call_id,
        identifiers={"assistant_id": "asst_acme", "phone_number": None, "call_id": call_id},
        idempotency_key=key,
        received_at=utcnow() - timedelta(seconds=seconds_ago),
    )


class TestSQLTenantDirectory:
    """Tests for SQLTenantDirectory."""

    @pytest.mark.asyncio
    async def test_find_by_assistant_id(self, sql_directory: SQLTenantDirectory):
        """Should find active assistants by id."""
        assistant = await sql_directory.find_active_assistant("asst_acme")

        assert assistant is not None
        assert assistant.tenant_id == "acme-hvac"
        assert await sql_directory.find_active_assistant("asst_rio_old") is None
        assert await sql_directory.find_active_assistant("asst_none") is None

    @pytest.mark.asyncio
    async def test_find_by_phone(self, sql_directory: SQLTenantDirectory):
        """Should match phone numbers in normalized form."""
        assistant = await sql_directory.find_active_assistant_by_phone("(555) 555-0200")

        assert assistant.assistant_id == "asst_rio"
        assert (await sql_directory.find_active_assistant_by_phone(ACME_LINE)).tenant_id == "acme-hvac"
        assert await sql_directory.find_active_assistant_by_phone("+44 555 555 0200") is None

    @pytest.mark.asyncio
    async def test_get_tenant_round_trip(self, sql_directory: SQLTenantDirectory, rio_tenant):
        """Should rebuild the tenant with ordered technicians and assistants."""
        tenant = await sql_directory.get_tenant("rio-plumbing")

        assert tenant.name == rio_tenant.name
        assert tenant.primary_language == "es"
        assert tenant.supported_languages == ("es", "en")
        assert [t.name for t in tenant.technicians] == ["Marco", "Lena"]
        assert {a.assistant_id for a in tenant.assistants} == {"asst_rio", "asst_rio_old"}
        assert tenant.customer_sms_consent is False
        assert await sql_directory.get_tenant("nobody") is None

    @pytest.mark.asyncio
    async def test_deactivate_assistant(self, sql_directory: SQLTenantDirectory):
        """Should stop resolving a deactivated assistant."""
        await sql_directory.set_assistant_active("asst_rio", False)

        assert await sql_directory.find_active_assistant("asst_rio") is None
        assert await sql_directory.find_active_assistant_by_phone(RIO_LINE) is None

    @pytest.mark.asyncio
    async def test_reseed_replaces_tenant(self, sql_directory: SQLTenantDirectory, acme_tenant):
        """Should replace a tenant's assistants and contacts on re-seed."""
        acme_tenant.name = "Acme Heating & Air"
        acme_tenant.technicians = []
        await sql_directory.add_tenant(acme_tenant)

        tenant = await sql_directory.get_tenant("acme-hvac")
        assert tenant.name == "Acme Heating & Air"
        assert tenant.technicians == []
        assert len(tenant.assistants) == 1

    @pytest.mark.asyncio
    async def test_foreign_assistant_stores_nothing(self, sql_directory: SQLTenantDirectory):
        """Should reject a tenant claiming another tenant's assistant before writing."""
        rogue = Tenant(
            tenant_id="rogue",
            name="Rogue",
            assistants=[Assistant("asst_acme", "acme-hvac", "+15555550301")],
        )

        with pytest.raises(ConfigurationError):
            await sql_directory.add_tenant(rogue)

        assert await sql_directory.get_tenant("rogue") is None
        assert (await sql_directory.find_active_assistant("asst_acme")).tenant_id == "acme-hvac"


class TestSQLEventLog:
    """Tests for SQLEventLog."""

    @pytest.mark.asyncio
    async def test_entries_round_trip(self, sql_event_log: SQLEventLog):
        """Should store entries and return them newest first."""
        await sql_event_log.append(_entry(30, call_id="call-old"))
        await sql_event_log.append(_entry(10, call_id="call-new", tenant_id="rio-plumbing"))

        entries = await sql_event_log.recent_entries(limit=10)
        assert [e.call_id for e in entries] == ["call-new", "call-old"]
        assert entries[1].identifiers["assistant_id"] == "asst_acme"
        assert entries[0].received_at.tzinfo is not None

        scoped = await sql_event_log.recent_entries(tenant_id="acme-hvac")
        assert [e.call_id for e in scoped] == ["call-old"]

    @pytest.mark.asyncio
    async def test_idempotency_and_call_lookup(self, sql_event_log: SQLEventLog):
        """Should find idempotency keys and the tenant of a logged call."""
        await sql_event_log.append(_entry(5, call_id="call-7", key="call-7:call-started:abc"))

        assert await sql_event_log.has_idempotency_key("call-7:call-started:abc")
        assert not await sql_event_log.has_idempotency_key("other")
        assert await sql_event_log.find_tenant_by_call_id("call-7") == "acme-hvac"
        assert await sql_event_log.find_tenant_by_call_id("call-8") is None

    @pytest.mark.asyncio
    async def test_call_upsert(self, sql_event_log: SQLEventLog):
        """Should insert once, then merge, never reopening an ended call."""
        assert await sql_event_log.upsert_call(CallRecord("call-1", "acme-hvac", language="en")) is True
        assert await sql_event_log.upsert_call(
            CallRecord("call-1", "acme-hvac", status="ended", ended_reason="hangup")
        ) is False
        await sql_event_log.upsert_call(CallRecord("call-1", "acme-hvac", status="in-progress"))

        record = await sql_event_log.get_call("call-1")
        assert record.status == "ended"
        assert record.language == "en"
        assert record.ended_reason == "hangup"
        assert await sql_event_log.find_tenant_by_call_id("call-1") == "acme-hvac"

    @pytest.mark.asyncio
    async def test_alert_attempts_and_summary(self, sql_event_log: SQLEventLog):
        """Should store alert attempts and include them in the summary."""
        attempts = [
            AlertAttempt(new_id("alr"), "tri_1", "acme-hvac", "call-1", AlertTarget.TECHNICIAN, "***11", status)
            for status in (DeliveryStatus.SENT, DeliveryStatus.FAILED)
        ]
        await sql_event_log.record_alert_attempts(attempts)
        await sql_event_log.append(_entry(1))

        assert len(await sql_event_log.alert_attempts(triage_id="tri_1")) == 2
        summary = await sql_event_log.summary(tenant_id="acme-hvac")
        assert summary.total_events == 1
        assert summary.delivery_rate == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_clear(self, sql_event_log: SQLEventLog):
        """Should remove entries, attempts and call records."""
        await sql_event_log.append(_entry(1))
        await sql_event_log.upsert_call(CallRecord("call-1", "acme-hvac"))

        await sql_event_log.clear()

        assert await sql_event_log.recent_entries() == []
        assert await sql_event_log.get_call("call-1") is None


class TestSQLDispatch:
    """Tests for the dispatcher running on the SQL adapters."""

    @pytest.mark.asyncio
    async def test_emergency_round_trip(
        self,
        test_settings,
        sql_directory: SQLTenantDirectory,
        sql_event_log: SQLEventLog,
        webhook_body,
        signed,
    ):
        """Should triage, alert and log through the SQL datastore."""
        gateway = DummySMSGateway()
        dispatcher = create_dispatcher(
            test_settings,
            directory=sql_directory,
            event_log=sql_event_log,
            gateway=gateway,
        )
        raw = webhook_body(
            "transcript",
            call_id="call-sql",
            assistant_id="asst_acme",
            transcript="no heat, it's freezing, please help",
            customer={"name": "Pat", "number": "+15555550999"},
        )

        ack = await dispatcher.handle(raw, signed(raw))

        assert ack.status_code == 200
        assert ack.body["result"]["alertAttempts"] == 2
        entries = await sql_event_log.recent_entries()
        assert len(entries) == 1
        triage = entries[0].triage_results[0]
        assert triage.requires_immediate_attention is True
        assert {h.phrase for h in triage.hits} == {"no heat", "freezing"}
        assert len(await sql_event_log.alert_attempts(triage_id=triage.triage_id)) == 2
