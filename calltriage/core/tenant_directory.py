"""
CallTriage - Tenant Directory

Read-side datastore access for tenant resolution: active assistants by
platform id, active assistants by bound phone number, tenants by id.

Implementations:
    - InMemoryTenantDirectory: seeded programmatically or from YAML
    - SQLTenantDirectory (calltriage.core.sql_store): SQLAlchemy-backed
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

import yaml

from calltriage.config import Settings
from calltriage.core.exceptions import ConfigurationError
from calltriage.core.types import Assistant, TechnicianContact, Tenant
from calltriage.telephony.privacy import mask_phone_number, normalize_phone_number

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class TenantDirectory(Protocol):
    """
    Protocol for tenant/assistant lookups.

    Lookups are read-only and side-effect free. Inactive assistants are never
    returned.
    """

    @abstractmethod
    async def find_active_assistant(self, assistant_id: str) -> Optional[Assistant]:
        """Active assistant with this platform-assigned id."""
        ...

    @abstractmethod
    async def find_active_assistant_by_phone(self, phone_number: str) -> Optional[Assistant]:
        """Active assistant bound to this phone number (any formatting)."""
        ...

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...


def check_assistant_ownership(tenant: Tenant) -> None:
    """Raise ConfigurationError if any assistant names another tenant."""
    for assistant in tenant.assistants:
        if assistant.tenant_id != tenant.tenant_id:
            raise ConfigurationError(
                f"Assistant {assistant.assistant_id} does not belong to {tenant.tenant_id}"
            )


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryTenantDirectory:
    """
    In-memory TenantDirectory. Thread-safe.

    Phone numbers are indexed in normalized form; when two active assistants
    share a number the one registered first keeps it.
    """

    def __init__(self, tenants: Optional[List[Tenant]] = None):
        self._lock = Lock()
        self._tenants: Dict[str, Tenant] = {}
        self._assistants: Dict[str, Assistant] = {}
        for tenant in tenants or []:
            self.add_tenant(tenant)

    def add_tenant(self, tenant: Tenant) -> None:
        """Insert or replace a tenant; nothing is stored if validation fails."""
        check_assistant_ownership(tenant)
        with self._lock:
            previous = self._tenants.get(tenant.tenant_id)
            if previous is not None:
                for assistant in previous.assistants:
                    self._assistants.pop(assistant.assistant_id, None)
            self._tenants[tenant.tenant_id] = tenant
            for assistant in tenant.assistants:
                self._assistants[assistant.assistant_id] = assistant

    def set_assistant_active(self, assistant_id: str, active: bool) -> None:
        with self._lock:
            current = self._assistants.get(assistant_id)
            if current is None:
                raise KeyError(assistant_id)
            updated = Assistant(current.assistant_id, current.tenant_id, current.phone_number, active)
            self._assistants[assistant_id] = updated

            tenant = self._tenants.get(current.tenant_id)
            if tenant is not None:
                tenant.assistants = [
                    updated if a.assistant_id == assistant_id else a for a in tenant.assistants
                ]

    @property
    def tenant_count(self) -> int:
        with self._lock:
            return len(self._tenants)

    async def find_active_assistant(self, assistant_id: str) -> Optional[Assistant]:
        with self._lock:
            assistant = self._assistants.get(assistant_id)
        if assistant is None or not assistant.is_active:
            return None
        return assistant

    async def find_active_assistant_by_phone(self, phone_number: str) -> Optional[Assistant]:
        wanted = normalize_phone_number(phone_number)
        if not wanted:
            return None
        with self._lock:
            for assistant in self._assistants.values():
                if assistant.is_active and normalize_phone_number(assistant.phone_number) == wanted:
                    return assistant
        return None

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._lock:
            return self._tenants.get(tenant_id)


# =============================================================================
# Seed Loading
# =============================================================================

def tenants_from_mapping(data: Mapping[str, Any]) -> List[Tenant]:
    """
    Build tenants from a seed mapping.

    Expected shape:
        tenants:
          - tenant_id: acme-hvac
            name: Acme Heating
            industry_code: hvac
            supported_languages: [en, es]
            technicians: [{name: Sam, phone: "+15550100001"}]
            assistants: [{assistant_id: asst_1, phone_number: "+15550109999"}]
    """
    tenants = []
    try:
        for raw in data.get("tenants") or []:
            tenant_id = raw["tenant_id"]
            primary = raw.get("primary_language", "en")
            tenants.append(Tenant(
                tenant_id=tenant_id,
                name=raw.get("name", tenant_id),
                industry_code=raw.get("industry_code", "generic"),
                primary_language=primary,
                supported_languages=tuple(raw.get("supported_languages") or [primary]),
                technicians=[
                    TechnicianContact(t["name"], t.get("phone"))
                    for t in raw.get("technicians") or []
                ],
                assistants=[
                    Assistant(
                        assistant_id=a["assistant_id"],
                        tenant_id=tenant_id,
                        phone_number=a.get("phone_number"),
                        is_active=a.get("is_active", True),
                    )
                    for a in raw.get("assistants") or []
                ],
                customer_sms_consent=bool(raw.get("customer_sms_consent", False)),
                urgency_threshold=raw.get("urgency_threshold"),
                business_phone=raw.get("business_phone"),
                timezone=raw.get("timezone", "UTC"),
                business_hours_start=int(raw.get("business_hours_start", 8)),
                business_hours_end=int(raw.get("business_hours_end", 18)),
            ))
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid tenant seed: {e}") from e
    return tenants


def load_tenants_from_yaml(path: str | Path) -> List[Tenant]:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Tenant seed file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return tenants_from_mapping(data)


def describe_tenant(tenant: Tenant) -> Dict[str, Any]:
    """Log-safe summary of a tenant (no raw phone numbers)."""
    return {
        "tenant_id": tenant.tenant_id,
        "industry_code": tenant.industry_code,
        "languages": list(tenant.languages),
        "technicians": len(tenant.technicians),
        "assistants": [
            {"assistant_id": a.assistant_id, "phone": mask_phone_number(a.phone_number), "active": a.is_active}
            for a in tenant.assistants
        ],
    }


# =============================================================================
# Factory Function
# =============================================================================

def create_tenant_directory(settings: Settings) -> InMemoryTenantDirectory:
    """
    Create the in-memory tenant directory, seeded from TENANT_SEED_PATH if set.

    The SQL-backed directory is built by calltriage.core.sql_store once the
    engine is initialized.
    """
    tenants = load_tenants_from_yaml(settings.tenant_seed_path) if settings.tenant_seed_path else []
    directory = InMemoryTenantDirectory(tenants)
    logger.info("InMemoryTenantDirectory initialized: tenants=%d", directory.tenant_count)
    for tenant in tenants:
        logger.debug("Seeded tenant %s", describe_tenant(tenant))
    return directory
