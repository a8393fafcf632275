"""
============================================================================
Project Stable Bridge v1.0.0
Cashout API - Off-Ramp (token -> fiat)
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Wallet signature + signed message + deposit tx hash
Side Effects: Processor transfers/payouts, ledger writes (via SettlementEngine)

A repeated request for the same deposit returns the existing cashout
with existing=true; it never creates a second payout. Operators finish a
cashout interrupted before its payout via POST /{cashout_id}/resume.

============================================================================
"""

import logging

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_settlement_engine, require_operator
from app.api.responses import result_response, settlement_error_response
from app.schemas.settlement import CashoutRequest
from services.settlement_engine import SettlementEngine
from services.settlement_errors import SettlementError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/request",
    summary="Request Cashout",
    description=(
        "Settles a verified token deposit to custody with a bank payout.\n\n"
        "**Authentication:** wallet signature over the cashout message"
    ),
)
def request_cashout(
    body: CashoutRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        result = engine.initiate_offramp_cashout(
            wallet_address=body.wallet_address,
            token_amount=body.amount,
            currency=body.currency,
            bank_account_ref=body.bank_account_id,
            tx_hash=body.tx_hash,
            signature=body.signature,
            message=body.message,
            sub_account_ref=body.connected_account_id,
        )
    except SettlementError as e:
        return settlement_error_response(e)

    return result_response(result, extra={"existing": result.idempotent_replay})


@router.post(
    "/{cashout_id}/resume",
    summary="Resume Interrupted Payout (operator)",
    description="Repeats the payout step for a cashout stuck in pending_transfer.",
    dependencies=[Depends(require_operator)],
)
def resume_payout(
    cashout_id: str,
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        result = engine.resume_offramp_payout(cashout_id)
    except SettlementError as e:
        return settlement_error_response(e)
    return result_response(result, extra={"existing": result.idempotent_replay})


@router.get("/status/{cashout_id}", summary="Cashout Status")
def get_cashout_status(
    cashout_id: str,
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        cashout = engine.get_cashout(cashout_id)
    except SettlementError as e:
        return settlement_error_response(e)
    return {"cashout": cashout.to_dict()}


@router.get("/history/{address}", summary="Cashout History")
def get_cashout_history(
    address: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        result = engine.cashout_history(address, page, limit)
    except SettlementError as e:
        return settlement_error_response(e)
    return result.to_dict("cashouts")


@router.get("/balance/{address}", summary="Token Balance")
def get_token_balance(
    address: str,
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        balance = engine.token_balance(address)
    except SettlementError as e:
        return settlement_error_response(e)
    return {"address": address, "balance": str(balance), "token": "USDT"}
