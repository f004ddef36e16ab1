"""
CallTriage - Tenant Resolver

Maps an inbound event's opaque identifiers to exactly one tenant.

Strategies run in fixed priority order and the first hit wins:
    1. AssistantIdStrategy - active assistant by platform assistant id
    2. PhoneNumberStrategy - active assistant by bound phone number
    3. PriorCallStrategy   - tenant a previous event for this call id was logged under

Every strategy call carries the datastore timeout. A timeout or datastore
error does not stop the chain: it is recorded on the resolution trail and the
next strategy runs.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from calltriage.core.event_log import EventLog
from calltriage.core.exceptions import TenantNotFound
from calltriage.core.tenant_directory import TenantDirectory
from calltriage.core.types import Resolution, ResolutionAttempt, ResolutionOutcome
from calltriage.telephony.privacy import mask_phone_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionCriteria:
    assistant_id: Optional[str] = None
    phone_number: Optional[str] = None
    call_id: Optional[str] = None

    def identifiers(self) -> dict:
        """Attempted identifiers, safe to log and return to the platform."""
        return {
            "assistant_id": self.assistant_id,
            "phone_number": mask_phone_number(self.phone_number) if self.phone_number else None,
            "call_id": self.call_id,
        }


# =============================================================================
# Strategies
# =============================================================================

@runtime_checkable
class ResolutionStrategy(Protocol):
    name: str

    @abstractmethod
    def applicable(self, criteria: ResolutionCriteria) -> bool:
        """Whether the criteria carry the identifier this strategy needs."""
        ...

    @abstractmethod
    async def attempt(self, criteria: ResolutionCriteria) -> Optional[str]:
        """Tenant id on a hit, None on a miss. Side-effect free."""
        ...


class AssistantIdStrategy:
    name = "assistant_id"

    def __init__(self, directory: TenantDirectory):
        self._directory = directory

    def applicable(self, criteria: ResolutionCriteria) -> bool:
        return bool(criteria.assistant_id)

    async def attempt(self, criteria: ResolutionCriteria) -> Optional[str]:
        assistant = await self._directory.find_active_assistant(criteria.assistant_id)
        return assistant.tenant_id if assistant else None


class PhoneNumberStrategy:
    name = "phone_number"

    def __init__(self, directory: TenantDirectory):
        self._directory = directory

    def applicable(self, criteria: ResolutionCriteria) -> bool:
        return bool(criteria.phone_number)

    async def attempt(self, criteria: ResolutionCriteria) -> Optional[str]:
        assistant = await self._directory.find_active_assistant_by_phone(criteria.phone_number)
        return assistant.tenant_id if assistant else None


class PriorCallStrategy:
    name = "call_id"

    def __init__(self, event_log: EventLog):
        self._event_log = event_log

    def applicable(self, criteria: ResolutionCriteria) -> bool:
        return bool(criteria.call_id)

    async def attempt(self, criteria: ResolutionCriteria) -> Optional[str]:
        return await self._event_log.find_tenant_by_call_id(criteria.call_id)


# =============================================================================
# Resolver
# =============================================================================

class TenantResolver:
    """
    Runs resolution strategies sequentially until one hits.

    Args:
        strategies: Ordered strategies; earlier entries take priority
        timeout_seconds: Per-strategy datastore timeout
    """

    def __init__(self, strategies: Sequence[ResolutionStrategy], timeout_seconds: float = 2.0):
        self._strategies = list(strategies)
        self._timeout = timeout_seconds

    @property
    def strategy_names(self) -> List[str]:
        return [s.name for s in self._strategies]

    async def resolve(
        self,
        assistant_id: Optional[str] = None,
        phone_number: Optional[str] = None,
        call_id: Optional[str] = None,
    ) -> Resolution:
        """
        Resolve the owning tenant.

        Raises:
            TenantNotFound: every strategy missed, was skipped or failed
        """
        criteria = ResolutionCriteria(assistant_id, phone_number, call_id)
        trail: List[ResolutionAttempt] = []

        for strategy in self._strategies:
            if not strategy.applicable(criteria):
                trail.append(ResolutionAttempt(strategy.name, ResolutionOutcome.SKIPPED))
                continue

            try:
                tenant_id = await asyncio.wait_for(strategy.attempt(criteria), timeout=self._timeout)
            except asyncio.TimeoutError:
                logger.warning("Resolver strategy %s timed out after %.1fs", strategy.name, self._timeout)
                trail.append(ResolutionAttempt(
                    strategy.name, ResolutionOutcome.ERROR, f"timeout after {self._timeout}s"
                ))
                continue
            except Exception as e:
                logger.warning("Resolver strategy %s failed: %s", strategy.name, e)
                trail.append(ResolutionAttempt(
                    strategy.name, ResolutionOutcome.ERROR, f"{type(e).__name__}: {e}"
                ))
                continue

            if tenant_id:
                trail.append(ResolutionAttempt(strategy.name, ResolutionOutcome.HIT))
                logger.debug("Tenant resolved via %s", strategy.name)
                return Resolution(tenant_id=tenant_id, strategy=strategy.name, attempts=tuple(trail))

            trail.append(ResolutionAttempt(strategy.name, ResolutionOutcome.MISS))

        identifiers = criteria.identifiers()
        logger.info(
            "Tenant not found: assistant_id=%s phone=%s call_id=%s",
            identifiers["assistant_id"], identifiers["phone_number"], identifiers["call_id"],
        )
        raise TenantNotFound(
            "Organization not found for this assistant",
            identifiers=identifiers,
            attempts=trail,
        )


def create_resolver(
    directory: TenantDirectory,
    event_log: EventLog,
    timeout_seconds: float = 2.0,
) -> TenantResolver:
    """Resolver with the standard strategy order."""
    return TenantResolver(
        [
            AssistantIdStrategy(directory),
            PhoneNumberStrategy(directory),
            PriorCallStrategy(event_log),
        ],
        timeout_seconds=timeout_seconds,
    )
