"""
============================================================================
Project Stable Bridge v1.0.0
Payment API - On-Ramp (fiat -> token)
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Decimal-string amounts, checksummed or lowercase addresses
Side Effects: Processor charges, ledger writes (via SettlementEngine)

Token transfer is never started here: only the authenticated
charge-confirmed event triggers it (see app/api/webhook.py).

============================================================================
"""

import logging

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_settlement_engine, require_operator
from app.api.responses import result_response, settlement_error_response
from app.schemas.settlement import CreatePaymentIntentRequest, ReconcileTransferRequest
from services.settlement_engine import SettlementEngine
from services.settlement_errors import SettlementError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/create-intent",
    summary="Create On-Ramp Charge",
    description="Creates a card charge and a pending payment that settles in tokens.",
)
def create_payment_intent(
    body: CreatePaymentIntentRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        result = engine.initiate_onramp(body.amount, body.currency, body.wallet_address)
    except SettlementError as e:
        return settlement_error_response(e)

    payment = result.payment
    return result_response(result, extra={
        "payment_intent_id": payment.payment_intent_id,
        "amount_usdt": str(payment.amount_token),
        "exchange_rate": str(payment.exchange_rate),
    })


@router.get(
    "/status/{payment_intent_id}",
    summary="Payment Status",
    description="Current best-known state. Pending rows are synced with the processor.",
)
def get_payment_status(
    payment_intent_id: str,
    sync: bool = Query(True),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        payment = engine.get_payment_status(payment_intent_id, sync=sync)
    except SettlementError as e:
        return settlement_error_response(e)
    return {"payment": payment.to_dict()}


@router.get("/history/{wallet_address}", summary="Payment History")
def get_payment_history(
    wallet_address: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        result = engine.payment_history(wallet_address, page, limit)
    except SettlementError as e:
        return settlement_error_response(e)
    return result.to_dict("payments")


@router.get("/custody-balance", summary="Custody Wallet Balance")
def get_custody_balance(engine: SettlementEngine = Depends(get_settlement_engine)):
    try:
        balance = engine.custody_balance()
    except SettlementError as e:
        return settlement_error_response(e)
    return {"address": balance["address"], "balance": str(balance["balance"]), "token": "USDT"}


@router.get("/exchange-rate", summary="Fiat -> Token Quote")
def get_exchange_rate(
    currency: str = Query("usd"),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        rate = engine.exchange_quote(currency)
    except SettlementError as e:
        return settlement_error_response(e)
    return {"currency": currency.lower(), "rate": str(rate), "token": "USDT"}


@router.post(
    "/reconcile",
    summary="Reconcile Broadcast Transfer (operator)",
    description="Completes a processing/failed payment from an on-chain proven transfer.",
    dependencies=[Depends(require_operator)],
)
def reconcile_transfer(
    body: ReconcileTransferRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    try:
        result = engine.reconcile_onramp_transfer(body.payment_intent_id, body.tx_hash)
    except SettlementError as e:
        return settlement_error_response(e)
    return result_response(result)
