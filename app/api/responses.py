"""
============================================================================
Project Stable Bridge v1.0.0
API Responses - Settlement Error Mapping
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Side Effects: None

The settlement core returns structured results and raises typed errors;
this module is the only place that turns them into HTTP status codes.

============================================================================
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from services.settlement_errors import InsufficientCustodyBalance, SettlementError
from services.settlement_models import SettlementResult

logger = logging.getLogger(__name__)


# ============================================================================
# STATUS MAPPING
# ============================================================================

ERROR_KIND_STATUS: Dict[str, int] = {
    "ValidationError": 400,
    "AuthenticationError": 401,
    "NotFoundError": 404,
    "ChainVerificationError": 400,
    "InvalidStateTransition": 409,
    "ExternalProcessorError": 502,
    "TransientInfraError": 503,
    "ChainTransferError": 500,
}


def status_for(error_kind: Optional[str]) -> int:
    return ERROR_KIND_STATUS.get(error_kind or "", 500)


def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 400,
    details: Optional[dict] = None
) -> JSONResponse:
    """
    Create standardized error response.

    Reliability Level: STANDARD
    Input Constraints: Error code, message, optional details
    Side Effects: None

    Returns:
        JSONResponse: Formatted error response
    """
    content = {
        "error_code": error_code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    if details:
        content["details"] = details

    return JSONResponse(status_code=status_code, content=content)


def settlement_error_response(error: SettlementError) -> JSONResponse:
    """Map a raised settlement error to its HTTP response."""
    status_code = status_for(error.error_kind)
    if isinstance(error, InsufficientCustodyBalance):
        status_code = 400

    body = error.to_dict()
    log = logger.error if status_code >= 500 else logger.warning
    log(f"[{error.error_code}] {error.reason}: {error.message} | status={status_code}")

    details = dict(body["details"])
    details["error_kind"] = error.error_kind
    details["reason"] = error.reason
    return create_error_response(error.error_code, error.message, status_code, details)


def result_response(result: SettlementResult, extra: Optional[Dict[str, Any]] = None) -> JSONResponse:
    """
    200 with the result body on success; the mapped error status otherwise.

    A failed result still carries the ledger row, so the caller can see
    exactly what was recorded.
    """
    content = result.to_dict()
    if extra:
        content.update(extra)
    status_code = 200 if result.ok else status_for(result.error_kind)
    return JSONResponse(status_code=status_code, content=content)
