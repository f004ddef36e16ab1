"""
CallTriage - Event Log

Durable record of every webhook (rejections included), every triage
decision, every alert attempt and the lifecycle state of each call. Also
serves the resolver's "tenant of a previously seen call" lookup.

Privacy Notes:
    - Phone numbers reach the log masked only
    - Transcript text is not part of the log; CallRecord.transcript is only
      populated when STORE_RAW_TRANSCRIPTS=True
    - The in-memory log is bounded; the SQL log is the durable option
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections import Counter, OrderedDict, defaultdict
from threading import Lock
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from calltriage.config import Settings
from calltriage.core.types import (
    AlertAttempt,
    CallRecord,
    DeliveryStatus,
    EventLogEntry,
    EventLogSummary,
)

logger = logging.getLogger(__name__)

TERMINAL_CALL_STATUSES = frozenset({"ended"})


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class EventLog(Protocol):
    """
    Protocol for event log storage.

    Writes are append-only, apart from call records which are upserted by
    call id.
    """

    @abstractmethod
    async def append(self, entry: EventLogEntry) -> None:
        """Append one webhook entry."""
        ...

    @abstractmethod
    async def has_idempotency_key(self, key: str) -> bool:
        """Whether an entry with this idempotency key was already logged."""
        ...

    @abstractmethod
    async def record_alert_attempts(self, attempts: List[AlertAttempt]) -> None:
        ...

    @abstractmethod
    async def find_tenant_by_call_id(self, call_id: str) -> Optional[str]:
        """Tenant a call was previously attributed to, if any."""
        ...

    @abstractmethod
    async def upsert_call(self, record: CallRecord) -> bool:
        """
        Merge a call record by call id. Fields left as None do not overwrite.

        Returns:
            True if the call was new
        """
        ...

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        ...

    @abstractmethod
    async def recent_entries(self, limit: int = 100, tenant_id: Optional[str] = None) -> List[EventLogEntry]:
        """Most recent entries, newest first."""
        ...

    @abstractmethod
    async def alert_attempts(
        self,
        triage_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> List[AlertAttempt]:
        ...

    @abstractmethod
    async def summary(self, tenant_id: Optional[str] = None) -> EventLogSummary:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...


# =============================================================================
# Shared Helpers
# =============================================================================

def merge_call_record(existing: CallRecord, update: CallRecord) -> CallRecord:
    """Apply the non-empty fields of ``update`` onto ``existing``."""
    started_at = existing.started_at or update.started_at
    if existing.started_at and update.started_at:
        started_at = min(existing.started_at, update.started_at)

    # Late or redelivered events never reopen an ended call
    status = existing.status if existing.status in TERMINAL_CALL_STATUSES else (update.status or existing.status)

    return CallRecord(
        call_id=existing.call_id,
        tenant_id=existing.tenant_id,
        status=status,
        language=update.language or existing.language,
        started_at=started_at,
        ended_at=update.ended_at or existing.ended_at,
        ended_reason=update.ended_reason or existing.ended_reason,
        last_event_type=update.last_event_type or existing.last_event_type,
        transcript=update.transcript or existing.transcript,
        updated_at=update.updated_at,
    )


def summarize(entries: Iterable[EventLogEntry], attempts: Iterable[AlertAttempt]) -> EventLogSummary:
    """Aggregate entries and alert attempts into dashboard counters."""
    outcome_counts: Dict[str, int] = defaultdict(int)
    type_counts: Dict[str, int] = defaultdict(int)
    language_counts: Dict[str, int] = defaultdict(int)
    alert_counts: Dict[str, int] = defaultdict(int)

    total = 0
    replays = 0
    triage_count = 0
    emergencies = 0
    score_sum = 0.0

    for entry in entries:
        total += 1
        replays += int(entry.is_replay)
        outcome_counts[entry.outcome.value] += 1
        type_counts[entry.event_type or "unknown"] += 1
        for triage in entry.triage_results:
            triage_count += 1
            score_sum += triage.score
            language_counts[triage.detected_language] += 1
            if triage.requires_immediate_attention:
                emergencies += 1

    for attempt in attempts:
        alert_counts[attempt.status.value] += 1

    sent = alert_counts.get(DeliveryStatus.SENT.value, 0)
    failed = alert_counts.get(DeliveryStatus.FAILED.value, 0)

    return EventLogSummary(
        total_events=total,
        replays=replays,
        outcome_counts=dict(outcome_counts),
        event_type_counts=dict(type_counts),
        triage_count=triage_count,
        emergencies=emergencies,
        avg_score=score_sum / triage_count if triage_count else 0.0,
        language_counts=dict(language_counts),
        alert_status_counts=dict(alert_counts),
        delivery_rate=sent / (sent + failed) if (sent + failed) else 0.0,
    )


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryEventLog:
    """
    In-memory EventLog. Thread-safe and bounded.

    Entries and alert attempts beyond ``max_entries`` drop oldest-first. Call
    records and the call-to-tenant index are kept least-recently-used, each
    capped at ``max_entries`` calls; the index outlives entry trimming so
    follow-up events still resolve.
    """

    def __init__(self, max_entries: int = 10000):
        self._max_entries = max_entries
        self._lock = Lock()
        self._entries: List[EventLogEntry] = []
        self._attempts: List[AlertAttempt] = []
        self._keys: Counter = Counter()
        self._calls: OrderedDict[str, CallRecord] = OrderedDict()
        self._call_tenants: OrderedDict[str, str] = OrderedDict()

        logger.info("InMemoryEventLog initialized: max_entries=%d", max_entries)

    async def append(self, entry: EventLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            if entry.idempotency_key:
                self._keys[entry.idempotency_key] += 1
            if entry.call_id and entry.tenant_id:
                self._remember_call_tenant(entry.call_id, entry.tenant_id)

            if len(self._entries) > self._max_entries:
                excess = len(self._entries) - self._max_entries
                for dropped in self._entries[:excess]:
                    if dropped.idempotency_key:
                        self._keys[dropped.idempotency_key] -= 1
                        if self._keys[dropped.idempotency_key] <= 0:
                            del self._keys[dropped.idempotency_key]
                self._entries = self._entries[excess:]
                logger.debug("Trimmed %d old entries from event log", excess)

    async def has_idempotency_key(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    async def record_alert_attempts(self, attempts: List[AlertAttempt]) -> None:
        if not attempts:
            return
        with self._lock:
            self._attempts.extend(attempts)
            if len(self._attempts) > self._max_entries:
                self._attempts = self._attempts[len(self._attempts) - self._max_entries:]

    async def find_tenant_by_call_id(self, call_id: str) -> Optional[str]:
        with self._lock:
            return self._call_tenants.get(call_id)

    async def upsert_call(self, record: CallRecord) -> bool:
        with self._lock:
            existing = self._calls.get(record.call_id)
            self._remember_call_tenant(record.call_id, record.tenant_id)
            if existing is None:
                self._calls[record.call_id] = record
                created = True
            else:
                self._calls[record.call_id] = merge_call_record(existing, record)
                self._calls.move_to_end(record.call_id)
                created = False
            while len(self._calls) > self._max_entries:
                self._calls.popitem(last=False)
            return created

    def _remember_call_tenant(self, call_id: str, tenant_id: str) -> None:
        # first tenant wins; caller holds the lock
        self._call_tenants.setdefault(call_id, tenant_id)
        self._call_tenants.move_to_end(call_id)
        while len(self._call_tenants) > self._max_entries:
            self._call_tenants.popitem(last=False)

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        with self._lock:
            return self._calls.get(call_id)

    async def recent_entries(self, limit: int = 100, tenant_id: Optional[str] = None) -> List[EventLogEntry]:
        with self._lock:
            entries = [e for e in self._entries if tenant_id is None or e.tenant_id == tenant_id]
        return list(reversed(entries[-limit:])) if limit > 0 else []

    async def alert_attempts(
        self,
        triage_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> List[AlertAttempt]:
        with self._lock:
            return [
                a for a in self._attempts
                if (triage_id is None or a.triage_id == triage_id)
                and (tenant_id is None or a.tenant_id == tenant_id)
            ]

    async def summary(self, tenant_id: Optional[str] = None) -> EventLogSummary:
        with self._lock:
            entries = [e for e in self._entries if tenant_id is None or e.tenant_id == tenant_id]
            attempts = [a for a in self._attempts if tenant_id is None or a.tenant_id == tenant_id]
        return summarize(entries, attempts)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._attempts.clear()
            self._keys.clear()
            self._calls.clear()
            self._call_tenants.clear()
            logger.info("Event log cleared")


# =============================================================================
# Factory Function
# =============================================================================

def create_event_log(settings: Settings) -> InMemoryEventLog:
    """
    Create the in-memory event log.

    The SQL-backed log is built by calltriage.core.sql_store once the engine
    is initialized.
    """
    return InMemoryEventLog(max_entries=settings.event_log_max_entries)
