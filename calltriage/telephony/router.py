"""
CallTriage - Call Platform Webhook Endpoints

POST /api/webhooks/vapi receives every call platform event. The raw body is
handed to the dispatcher untouched because the signature covers the exact
bytes that were sent.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from calltriage.api.schemas import WebhookInfoResponse
from calltriage.core.dispatcher import EventDispatcher
from calltriage.core.types import (
    EMERGENCY_EVENT_TYPES,
    LIFECYCLE_EVENT_TYPES,
    TOOL_EVENT_TYPES,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

WEBHOOK_INFO_UPDATED = "2026-10-01"


# =============================================================================
# Dependencies
# =============================================================================

def get_dispatcher(request: Request) -> EventDispatcher:
    """Dependency to get the event dispatcher from app state."""
    return request.app.state.dispatcher


# =============================================================================
# Webhook Endpoints
# =============================================================================

@router.post(
    "/vapi",
    summary="Receive call platform event",
    description="Signed webhook for call lifecycle, tool-call and transcript events.",
)
async def receive_webhook(
    request: Request,
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """
    Verify, resolve and route one platform event.

    Status codes:
        200 - processed or ignored
        400 - malformed body or missing event type
        401 - signature / secret did not verify
        404 - no tenant owns the assistant, phone number or call
        500 - internal failure; the platform may retry
    """
    raw_body = await request.body()
    ack = await dispatcher.handle(raw_body, request.headers)
    return JSONResponse(content=ack.body, status_code=ack.status_code)


@router.get(
    "/vapi",
    response_model=WebhookInfoResponse,
    summary="Webhook capability metadata",
)
async def webhook_info(
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> WebhookInfoResponse:
    """Static description of what the webhook accepts."""
    return WebhookInfoResponse(
        message="Multi-tenant call platform webhook endpoint",
        identificationMethods=["assistant_id", "phone_number", "call_id"],
        supportedEvents={
            "lifecycle": sorted(LIFECYCLE_EVENT_TYPES),
            "tool": sorted(TOOL_EVENT_TYPES),
            "emergency": sorted(EMERGENCY_EVENT_TYPES),
        },
        tools=dispatcher.tools.names,
        signatureVerification=dispatcher.verifier_enabled,
        lastUpdated=WEBHOOK_INFO_UPDATED,
    )
