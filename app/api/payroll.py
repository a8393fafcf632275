"""
============================================================================
Project Stable Bridge v1.0.0
Payroll API - Batch Disbursement
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Side Effects: Ledger writes (via SettlementEngine)

The employer signs and sends the batch transaction from their own wallet;
the bridge only records the batch and proves it on-chain afterwards.

============================================================================
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_settlement_engine
from app.api.responses import result_response, settlement_error_response
from app.schemas.settlement import ExecutePayrollRequest, PreparePayrollRequest
from services.settlement_engine import SettlementEngine
from services.settlement_errors import SettlementError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/prepare", summary="Prepare Payroll Batch")
def prepare_payroll(
    body: PreparePayrollRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    entries = [(employee.address, employee.amount) for employee in body.employees]
    try:
        result = engine.prepare_payroll_batch(body.employer_address, entries)
    except SettlementError as e:
        return settlement_error_response(e)
    return result_response(result)


@router.post(
    "/execute",
    summary="Verify & Settle Payroll Batch",
    description="All recipients must be paid by the transaction or none are settled.",
)
def execute_payroll(
    body: ExecutePayrollRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        result = engine.verify_batch_and_settle(body.payroll_id, body.tx_hash)
    except SettlementError as e:
        return settlement_error_response(e)
    return result_response(result)


@router.get("/history", summary="Payroll History")
def get_payroll_history(
    employer_address: Optional[str] = Query(None),
    employee_address: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        result = engine.payroll_history(employer_address, employee_address, page, limit)
    except SettlementError as e:
        return settlement_error_response(e)
    return result.to_dict("payrolls")
