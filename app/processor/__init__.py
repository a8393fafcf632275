# ============================================================================
# Project Stable Bridge v1.0.0
# Payment Processor Module - Charges, Payouts & Webhook Authentication
# ============================================================================

from app.processor.payout_gateway import PayoutGateway, flatten_form

__all__ = ["PayoutGateway", "flatten_form"]
