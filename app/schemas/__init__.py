# ============================================================================
# Project Stable Bridge v1.0.0
# Pydantic Schemas - Data Validation Layer
# ============================================================================

from app.schemas.settlement import (
    CreatePaymentIntentRequest,
    ReconcileTransferRequest,
    CashoutRequest,
    PayrollEntryIn,
    PreparePayrollRequest,
    ExecutePayrollRequest,
)

__all__ = [
    "CreatePaymentIntentRequest",
    "ReconcileTransferRequest",
    "CashoutRequest",
    "PayrollEntryIn",
    "PreparePayrollRequest",
    "ExecutePayrollRequest",
]
