"""
============================================================================
Project Stable Bridge v1.0.0
API Dependencies - Engine Injection & Operator Authentication
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Side Effects: None (reads process-wide instances set by the lifespan)

Routers never construct collaborators. The application lifespan calls
configure() once; tests override the get_* dependencies instead.

============================================================================
"""

import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException

from services.event_ingress import EventIngress
from services.settlement_engine import SettlementEngine

logger = logging.getLogger(__name__)


# ============================================================================
# PROCESS-WIDE INSTANCES (set in lifespan)
# ============================================================================

_engine: Optional[SettlementEngine] = None
_ingress: Optional[EventIngress] = None
_operator_token: Optional[str] = None


def configure(
    engine: Optional[SettlementEngine],
    ingress: Optional[EventIngress],
    operator_token: Optional[str] = None,
) -> None:
    global _engine, _ingress, _operator_token
    _engine = engine
    _ingress = ingress
    _operator_token = operator_token


def _unavailable(component: str) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={
            "error_code": "SYS-503",
            "message": f"{component} not initialized",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def get_settlement_engine() -> SettlementEngine:
    if _engine is None:
        raise _unavailable("Settlement engine")
    return _engine


def get_event_ingress() -> EventIngress:
    if _ingress is None:
        raise _unavailable("Event ingress")
    return _ingress


def get_operator_token() -> Optional[str]:
    return _operator_token


# ============================================================================
# Authentication Dependency
# ============================================================================

def require_operator(
    authorization: Optional[str] = Header(None, description="Bearer token"),
    operator_token: Optional[str] = Depends(get_operator_token),
) -> None:
    """
    Guard manual reconciliation endpoints.

    Raises:
        HTTPException: 403 SEC-090 when no operator token is configured,
            401 SEC-001 when the bearer token is missing or wrong
    """
    if not operator_token:
        logger.warning("[SEC-090] Operator endpoint called but OPERATOR_API_TOKEN is unset")
        raise HTTPException(
            status_code=403,
            detail={
                "error_code": "SEC-090",
                "message": "Operator endpoints are disabled",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail={
                "error_code": "SEC-001",
                "message": "Authorization header required. Use: Bearer <operator_token>",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    provided = authorization[7:].strip()
    if not hmac.compare_digest(provided.encode("utf-8"), operator_token.encode("utf-8")):
        logger.warning("[SEC-001] Invalid operator token")
        raise HTTPException(
            status_code=401,
            detail={
                "error_code": "SEC-001",
                "message": "Invalid operator token",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
