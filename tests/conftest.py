"""
CallTriage - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

# Ensure the project root (main.py) is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from calltriage.config import Settings
from calltriage.core.dispatcher import EventDispatcher, create_dispatcher
from calltriage.core.event_log import InMemoryEventLog
from calltriage.core.tenant_directory import InMemoryTenantDirectory
from calltriage.core.types import Assistant, CallContext, TechnicianContact, Tenant
from calltriage.services.alerts import AlertFanout
from calltriage.services.classifier import UrgencyClassifier
from calltriage.services.lexicon import LexiconStore
from calltriage.services.sms import DummySMSGateway
from calltriage.telephony.signature import compute_signature

WEBHOOK_SECRET = "test-webhook-secret"

ACME_TECH_PHONE = "+15555550111"
ACME_LINE = "+15555550100"
RIO_LINE = "+15555550200"
RIO_OLD_LINE = "+15555550299"
CUSTOMER_PHONE = "+15555550999"

# 12:00 in Chicago, 10:00 in Los Angeles: no time-of-day modifier applies
MIDDAY_UTC = datetime(2026, 1, 14, 18, 0, tzinfo=timezone.utc)


def midday_clock() -> datetime:
    return MIDDAY_UTC


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests requiring external dependencies")


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    Signature verification on, dummy SMS backend, in-memory datastore.
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        webhook_secret=WEBHOOK_SECRET,
        datastore_backend="memory",
        tenant_seed_path=None,
        lexicon_path=None,
        sms_backend="dummy",
        sms_timeout_seconds=1.0,
        alert_max_concurrency=5,
        datastore_timeout_seconds=1.0,
        default_urgency_threshold=0.7,
        anonymize_logs=True,
        store_raw_transcripts=False,
        event_log_max_entries=1000,
    )


# =============================================================================
# Tenant Fixtures
# =============================================================================

@pytest.fixture
def acme_tenant() -> Tenant:
    """English HVAC tenant: one technician, customer SMS consented."""
    return Tenant(
        tenant_id="acme-hvac",
        name="Acme Heating",
        industry_code="hvac",
        primary_language="en",
        supported_languages=("en",),
        technicians=[TechnicianContact("Dana", ACME_TECH_PHONE)],
        assistants=[Assistant("asst_acme", "acme-hvac", ACME_LINE)],
        customer_sms_consent=True,
        business_phone=ACME_LINE,
        timezone="America/Chicago",
    )


@pytest.fixture
def rio_tenant() -> Tenant:
    """Spanish-first plumbing tenant: two technicians, no customer SMS."""
    return Tenant(
        tenant_id="rio-plumbing",
        name="Plomería Río",
        industry_code="plumbing",
        primary_language="es",
        supported_languages=("es", "en"),
        technicians=[
            TechnicianContact("Marco", "+15555550211"),
            TechnicianContact("Lena", "+15555550212"),
        ],
        assistants=[
            Assistant("asst_rio", "rio-plumbing", RIO_LINE),
            Assistant("asst_rio_old", "rio-plumbing", RIO_OLD_LINE, is_active=False),
        ],
        customer_sms_consent=False,
        business_phone=RIO_LINE,
        timezone="America/Los_Angeles",
    )


@pytest.fixture
def tenants(acme_tenant: Tenant, rio_tenant: Tenant) -> List[Tenant]:
    return [acme_tenant, rio_tenant]


@pytest.fixture
def directory(tenants: List[Tenant]) -> InMemoryTenantDirectory:
    return InMemoryTenantDirectory(tenants)


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def lexicon() -> LexiconStore:
    return LexiconStore.default()


@pytest.fixture
def classifier(lexicon: LexiconStore) -> UrgencyClassifier:
    return UrgencyClassifier(lexicon, default_threshold=0.7, clock=midday_clock)


@pytest.fixture
def event_log() -> InMemoryEventLog:
    """Create a fresh in-memory event log."""
    return InMemoryEventLog(max_entries=1000)


@pytest.fixture
def sms_gateway() -> DummySMSGateway:
    return DummySMSGateway()


@pytest.fixture
def fanout(sms_gateway: DummySMSGateway, event_log: InMemoryEventLog) -> AlertFanout:
    return AlertFanout(sms_gateway, event_log, max_concurrency=5, timeout_seconds=1.0)


@pytest.fixture
def dispatcher(
    test_settings: Settings,
    directory: InMemoryTenantDirectory,
    event_log: InMemoryEventLog,
    sms_gateway: DummySMSGateway,
    lexicon: LexiconStore,
) -> EventDispatcher:
    """Fully wired dispatcher over in-memory adapters and the dummy gateway."""
    return create_dispatcher(
        test_settings,
        directory=directory,
        event_log=event_log,
        gateway=sms_gateway,
        lexicon=lexicon,
        clock=midday_clock,
    )


@pytest.fixture
def call_context(acme_tenant: Tenant) -> Callable[..., CallContext]:
    """Factory for a CallContext on the Acme tenant."""
    def _make(transcript: str = "", **overrides: Any) -> CallContext:
        values = dict(
            tenant_id=acme_tenant.tenant_id,
            call_id="call-ctx-1",
            industry_code=acme_tenant.industry_code,
            primary_language=acme_tenant.primary_language,
            supported_languages=acme_tenant.languages,
            transcript=transcript,
            customer_name="Pat",
            customer_phone=CUSTOMER_PHONE,
            customer_address="12 Elm St",
            timezone=acme_tenant.timezone,
        )
        values.update(overrides)
        return CallContext(**values)
    return _make


# =============================================================================
# Webhook Helpers
# =============================================================================

@pytest.fixture
def webhook_body() -> Callable[..., bytes]:
    """
    Factory for platform webhook bodies in the nested ``message`` form.

    Usage:
        webhook_body("call-started", call_id="call-1", assistant_id="asst_acme")
    """
    def _make(
        event_type: Optional[str],
        call_id: Optional[str] = "call-1",
        assistant_id: Optional[str] = None,
        phone_number: Optional[str] = None,
        **message: Any,
    ) -> bytes:
        body: Dict[str, Any] = dict(message)
        if event_type is not None:
            body["type"] = event_type
        if call_id is not None:
            body.setdefault("call", {})["id"] = call_id
        if assistant_id is not None:
            body["assistant"] = {"id": assistant_id}
        if phone_number is not None:
            body["phoneNumber"] = {"number": phone_number}
        return json.dumps({"message": body}).encode()
    return _make


@pytest.fixture
def signed() -> Callable[[bytes], Dict[str, str]]:
    """Headers carrying a valid HMAC signature for a body."""
    def _sign(body: bytes) -> Dict[str, str]:
        return {
            "content-type": "application/json",
            "x-vapi-signature": compute_signature(WEBHOOK_SECRET, body),
        }
    return _sign


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings, dispatcher: EventDispatcher):
    """Create a FastAPI app around the test dispatcher."""
    # Import here to avoid building the module-level app before settings exist
    from main import create_app

    return create_app(test_settings, dispatcher=dispatcher)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as c:
        yield c
