"""
============================================================================
Project Stable Bridge v1.0.0
Webhook API - Payment Processor Event Ingestion
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints:
    - Raw body signed with the processor webhook secret
    - Stripe-Signature header (t=<unix>,v1=<hex>)
Side Effects:
    - Dispatches charge and payout events into the SettlementEngine

SOVEREIGN MANDATE:
- Byte-perfect signature verification (no parsing before auth)
- Unauthenticated events are rejected (400 missing header, 401 otherwise)
- Authenticated events are always acknowledged with 200, even when local
  processing fails, so the processor does not amplify a local error

INGESTION FLOW:
1. Receive raw bytes
2. Verify signature (byte-perfect)
3. Dispatch by event type
4. Acknowledge {received: true} (+ error detail on processing failure)

============================================================================
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from app.api.dependencies import get_event_ingress
from app.api.responses import create_error_response, settlement_error_response
from app.auth.security import SIGNATURE_HEADER, WebhookSignatureError
from app.observability.metrics import record_webhook_event
from services.event_ingress import EventIngress
from services.settlement_errors import ValidationError

logger = logging.getLogger(__name__)


# ============================================================================
# ROUTER
# ============================================================================

router = APIRouter()

# Missing header is a malformed request; every other failure is an auth failure
MISSING_HEADER_CODE = "SEC-001"


# ============================================================================
# WEBHOOK ENDPOINT
# ============================================================================

@router.post(
    "/stripe",
    summary="Receive Processor Event",
    description=(
        "Receives signed payment-processor events.\n\n"
        "**Authentication:** HMAC-SHA256 signature in Stripe-Signature header\n\n"
        "**Response:** Always 200 once authenticated"
    ),
    responses={
        200: {
            "description": "Event authenticated and acknowledged",
            "content": {"application/json": {"example": {"received": True}}},
        },
        400: {"description": "Missing signature header or invalid event payload"},
        401: {"description": "Signature verification failed (SEC-002 to SEC-005)"},
    },
)
async def receive_processor_event(
    request: Request,
    ingress: EventIngress = Depends(get_event_ingress),
    stripe_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
):
    # CRITICAL: Must get raw bytes for byte-perfect verification
    raw_body = await request.body()

    try:
        outcome = await run_in_threadpool(ingress.handle, raw_body, stripe_signature)
    except WebhookSignatureError as e:
        status_code = 400 if e.error_code == MISSING_HEADER_CODE else 401
        logger.warning(f"[{e.error_code}] Webhook rejected: {e.message} | status={status_code}")
        record_webhook_event("unverified", "rejected")
        return create_error_response(e.error_code, e.message, status_code)
    except ValidationError as e:
        return settlement_error_response(e)

    return outcome.to_response()
