# ============================================================================
# Project Stable Bridge v1.0.0
# API Routes Module
# ============================================================================

from app.api.payment import router as payment_router
from app.api.cashout import router as cashout_router
from app.api.payroll import router as payroll_router
from app.api.webhook import router as webhook_router

__all__ = ["payment_router", "cashout_router", "payroll_router", "webhook_router"]
