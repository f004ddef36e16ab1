"""
CallTriage - REST API Routes

Read-only operational endpoints over the event log: aggregate analytics,
recent webhook entries and per-call state.

Access:
    - With OPERATOR_API_KEY set, every request must send it as
      X-Operator-Key and may omit tenant_id to read across tenants
    - Without it, every request must name a tenant_id and only that
      tenant's data is returned
"""

import hmac
import logging
from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from calltriage.config import Settings
from calltriage.core.event_log import EventLog

from .health import get_app_settings
from .schemas import (
    AlertAttemptSchema,
    CallDetailResponse,
    CallRecordSchema,
    EventLogEntrySchema,
    EventLogSummarySchema,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])


# =============================================================================
# Dependencies
# =============================================================================

def get_event_log(request: Request) -> EventLog:
    """Dependency to get the event log from app state."""
    return request.app.state.dispatcher.event_log


@dataclass(frozen=True)
class TenantScope:
    """Tenant a request may read; None only for authenticated operators."""
    tenant_id: Optional[str]


def get_tenant_scope(
    tenant_id: Optional[str] = Query(default=None, description="Restrict to one tenant"),
    x_operator_key: Optional[str] = Header(default=None, alias="X-Operator-Key"),
    settings: Settings = Depends(get_app_settings),
) -> TenantScope:
    """
    Resolve what the caller may see.

    Raises:
        HTTPException 401: operator key configured but missing or wrong
        HTTPException 400: no operator key configured and no tenant_id
    """
    if settings.operator_api_key:
        if not x_operator_key or not hmac.compare_digest(
            x_operator_key.encode(), settings.operator_api_key.encode()
        ):
            logger.warning("Rejected operator API request: missing or invalid key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid operator key",
            )
        return TenantScope(tenant_id)

    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="tenant_id is required",
        )
    return TenantScope(tenant_id)


# =============================================================================
# Analytics Endpoints
# =============================================================================

@router.get(
    "/analytics/summary",
    response_model=EventLogSummarySchema,
    tags=["analytics"],
)
async def get_analytics_summary(
    scope: TenantScope = Depends(get_tenant_scope),
    event_log: EventLog = Depends(get_event_log),
):
    """
    Aggregated counters across webhook events, triage results and alerts.

    Privacy:
    - Only aggregate statistics are returned
    - No transcript text or raw phone numbers
    """
    summary = await event_log.summary(tenant_id=scope.tenant_id)
    return EventLogSummarySchema(tenant_id=scope.tenant_id, **summary.to_dict())


@router.get(
    "/analytics/recent",
    response_model=List[EventLogEntrySchema],
    tags=["analytics"],
)
async def get_recent_events(
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum entries to return"),
    scope: TenantScope = Depends(get_tenant_scope),
    event_log: EventLog = Depends(get_event_log),
):
    """
    Most recent event log entries, newest first.

    Rejections carry no tenant, so only an operator reading across tenants
    sees which identifiers failed to resolve.
    """
    entries = await event_log.recent_entries(limit=limit, tenant_id=scope.tenant_id)
    return [EventLogEntrySchema.model_validate(entry.to_dict()) for entry in entries]


# =============================================================================
# Call Endpoints
# =============================================================================

@router.get(
    "/calls/{call_id}",
    response_model=CallDetailResponse,
    tags=["calls"],
)
async def get_call(
    call_id: str,
    scope: TenantScope = Depends(get_tenant_scope),
    event_log: EventLog = Depends(get_event_log),
):
    """
    Lifecycle state of one call and the alert attempts made for it.

    A call belonging to a different tenant than the one requested is
    reported as not found.
    """
    record = await event_log.get_call(call_id)
    if record is None or (scope.tenant_id is not None and record.tenant_id != scope.tenant_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Call not found: {call_id}",
        )

    attempts = await event_log.alert_attempts(tenant_id=record.tenant_id)
    return CallDetailResponse(
        call=CallRecordSchema.model_validate(record.to_dict()),
        alerts=[
            AlertAttemptSchema.model_validate(a.to_dict())
            for a in attempts
            if a.call_id == call_id
        ],
    )
