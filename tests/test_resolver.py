"""
CallTriage - Tenant Resolver Tests

Tests for the ordered tenant resolution chain.
These tests verify:
- Strategy priority (assistant id > phone number > prior call)
- Inactive assistants never resolve
- TenantNotFound carries only the attempted identifiers
- Timeouts and datastore errors fall through to the next strategy
- Tenant registration validates before storing anything

Run with: pytest tests/test_resolver.py -v
"""

import asyncio

import pytest

from calltriage.core.event_log import InMemoryEventLog
from calltriage.core.exceptions import ConfigurationError, TenantNotFound
from calltriage.core.tenant_directory import InMemoryTenantDirectory
from calltriage.core.types import Assistant, CallRecord, ResolutionOutcome, Tenant
from calltriage.services.resolver import (
    AssistantIdStrategy,
    ResolutionStrategy,
    TenantResolver,
    create_resolver,
)

from conftest import RIO_LINE, RIO_OLD_LINE


def _trail(resolution_or_error):
    return [(a.strategy, a.outcome) for a in resolution_or_error.attempts]


@pytest.fixture
def resolver(directory, event_log):
    return create_resolver(directory, event_log, timeout_seconds=0.5)


class TestStrategyOrder:
    """Tests for priority and short-circuiting."""

    def test_standard_order(self, resolver: TenantResolver):
        """Should try assistant id, then phone number, then call id."""
        assert resolver.strategy_names == ["assistant_id", "phone_number", "call_id"]

    def test_strategies_satisfy_protocol(self, directory):
        """Should implement the ResolutionStrategy protocol."""
        assert isinstance(AssistantIdStrategy(directory), ResolutionStrategy)

    @pytest.mark.asyncio
    async def test_assistant_id_hit(self, resolver: TenantResolver):
        """Should resolve by assistant id and stop there."""
        resolution = await resolver.resolve(assistant_id="asst_acme", phone_number=RIO_LINE, call_id="c1")

        assert resolution.tenant_id == "acme-hvac"
        assert resolution.strategy == "assistant_id"
        assert _trail(resolution) == [("assistant_id", ResolutionOutcome.HIT)]

    @pytest.mark.asyncio
    async def test_assistant_id_beats_phone_number(self, resolver: TenantResolver):
        """Should prefer the assistant's tenant when the phone belongs to another tenant."""
        resolution = await resolver.resolve(assistant_id="asst_acme", phone_number=RIO_LINE)
        assert resolution.tenant_id == "acme-hvac"

    @pytest.mark.asyncio
    async def test_phone_number_fallback(self, resolver: TenantResolver):
        """Should fall back to the phone number in any common format."""
        resolution = await resolver.resolve(assistant_id="asst_unknown", phone_number="1 (555) 555-0200")

        assert resolution.tenant_id == "rio-plumbing"
        assert resolution.strategy == "phone_number"
        assert _trail(resolution) == [
            ("assistant_id", ResolutionOutcome.MISS),
            ("phone_number", ResolutionOutcome.HIT),
        ]

    @pytest.mark.asyncio
    async def test_prior_call_fallback(self, resolver: TenantResolver, event_log: InMemoryEventLog):
        """Should resolve a follow-up event by the call id seen earlier."""
        await event_log.upsert_call(CallRecord(call_id="call-9", tenant_id="rio-plumbing"))

        resolution = await resolver.resolve(call_id="call-9")

        assert resolution.tenant_id == "rio-plumbing"
        assert resolution.strategy == "call_id"
        assert _trail(resolution) == [
            ("assistant_id", ResolutionOutcome.SKIPPED),
            ("phone_number", ResolutionOutcome.SKIPPED),
            ("call_id", ResolutionOutcome.HIT),
        ]


class TestNotFound:
    """Tests for TenantNotFound."""

    @pytest.mark.asyncio
    async def test_all_strategies_miss(self, resolver: TenantResolver):
        """Should raise with the attempted identifiers and full trail."""
        with pytest.raises(TenantNotFound) as exc_info:
            await resolver.resolve(assistant_id="asst_x", phone_number="+15550001199", call_id="call-x")

        error = exc_info.value
        assert error.status_code == 404
        assert error.identifiers == {
            "assistant_id": "asst_x",
            "phone_number": "***99",
            "call_id": "call-x",
        }
        assert [a.outcome for a in error.attempts] == [ResolutionOutcome.MISS] * 3

    @pytest.mark.asyncio
    async def test_other_country_same_national_digits(self, resolver: TenantResolver):
        """Should not match a number from another country sharing the national digits."""
        with pytest.raises(TenantNotFound) as exc_info:
            await resolver.resolve(phone_number="+44 555 555 0200")

        assert _trail(exc_info.value)[1] == ("phone_number", ResolutionOutcome.MISS)

    @pytest.mark.asyncio
    async def test_no_identifiers(self, resolver: TenantResolver):
        """Should skip every strategy and raise when no identifier is given."""
        with pytest.raises(TenantNotFound) as exc_info:
            await resolver.resolve()

        assert [a.outcome for a in exc_info.value.attempts] == [ResolutionOutcome.SKIPPED] * 3

    @pytest.mark.asyncio
    async def test_inactive_assistant_never_resolves(self, resolver: TenantResolver):
        """Should ignore inactive assistants by id and by phone."""
        with pytest.raises(TenantNotFound):
            await resolver.resolve(assistant_id="asst_rio_old", phone_number=RIO_OLD_LINE)

    @pytest.mark.asyncio
    async def test_deactivated_assistant(self, resolver: TenantResolver, directory: InMemoryTenantDirectory):
        """Should stop resolving an assistant once it is deactivated."""
        directory.set_assistant_active("asst_acme", False)

        with pytest.raises(TenantNotFound):
            await resolver.resolve(assistant_id="asst_acme")

    @pytest.mark.asyncio
    async def test_error_carries_no_tenant_data(self, resolver: TenantResolver):
        """Should not leak tenant names or numbers in the rejection."""
        with pytest.raises(TenantNotFound) as exc_info:
            await resolver.resolve(assistant_id="asst_x")

        text = repr(exc_info.value.details) + exc_info.value.message
        assert "acme" not in text.lower()
        assert "rio" not in text.lower()


class _SlowDirectory(InMemoryTenantDirectory):
    async def find_active_assistant(self, assistant_id):
        await asyncio.sleep(5)


class _BrokenDirectory(InMemoryTenantDirectory):
    async def find_active_assistant(self, assistant_id):
        raise RuntimeError("connection reset")


class TestDatastoreFailures:
    """Tests for timeouts and errors inside strategies."""

    @pytest.mark.asyncio
    async def test_timeout_falls_through(self, tenants, event_log):
        """Should record a timed-out strategy and continue with the next."""
        resolver = create_resolver(_SlowDirectory(tenants), event_log, timeout_seconds=0.05)

        resolution = await resolver.resolve(assistant_id="asst_acme", phone_number=RIO_LINE)

        assert resolution.tenant_id == "rio-plumbing"
        first = resolution.attempts[0]
        assert first.outcome == ResolutionOutcome.ERROR
        assert "timeout" in first.detail

    @pytest.mark.asyncio
    async def test_error_falls_through(self, tenants, event_log):
        """Should record a failing strategy and continue with the next."""
        resolver = create_resolver(_BrokenDirectory(tenants), event_log)

        resolution = await resolver.resolve(assistant_id="asst_acme", phone_number=RIO_LINE)

        assert resolution.strategy == "phone_number"
        assert resolution.attempts[0].outcome == ResolutionOutcome.ERROR
        assert "RuntimeError" in resolution.attempts[0].detail

    @pytest.mark.asyncio
    async def test_all_failing_raises_not_found(self, tenants, event_log):
        """Should raise TenantNotFound when the only applicable strategy errors."""
        resolver = create_resolver(_BrokenDirectory(tenants), event_log)

        with pytest.raises(TenantNotFound) as exc_info:
            await resolver.resolve(assistant_id="asst_acme")

        assert exc_info.value.attempts[0].outcome == ResolutionOutcome.ERROR


class TestDirectoryRegistration:
    """Tests for InMemoryTenantDirectory.add_tenant."""

    @pytest.mark.asyncio
    async def test_foreign_assistant_stores_nothing(self, directory: InMemoryTenantDirectory):
        """Should reject a tenant claiming another tenant's assistant and keep no trace of it."""
        rogue = Tenant(
            tenant_id="rogue",
            name="Rogue",
            industry_code="generic",
            assistants=[
                Assistant("asst_rogue", "rogue", "+15555550300"),
                Assistant("asst_stolen", "acme-hvac", "+15555550301"),
            ],
        )

        with pytest.raises(ConfigurationError):
            directory.add_tenant(rogue)

        assert directory.tenant_count == 2
        assert await directory.get_tenant("rogue") is None
        assert await directory.find_active_assistant("asst_rogue") is None
        assert await directory.find_active_assistant("asst_stolen") is None

    @pytest.mark.asyncio
    async def test_replacing_tenant_drops_old_assistants(self, directory: InMemoryTenantDirectory, acme_tenant):
        """Should forget assistants the new version of a tenant no longer lists."""
        acme_tenant.assistants = [Assistant("asst_acme_v2", "acme-hvac", "+15555550110")]

        directory.add_tenant(acme_tenant)

        assert await directory.find_active_assistant("asst_acme") is None
        assert (await directory.find_active_assistant("asst_acme_v2")).tenant_id == "acme-hvac"
