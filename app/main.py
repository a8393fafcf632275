"""
============================================================================
Project Stable Bridge v1.0.0
FastAPI Application Entry Point - Settlement Bridge Ingress
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Client requests and signed processor webhooks via HTTPS
Side Effects: Ledger writes, processor charges/payouts, custody transfers

SOVEREIGN MANDATE:
- Money never moves twice (idempotency gate on every settlement step)
- No settlement failure is silent (errors recorded on the ledger row)
- Zero tolerance for floating-point math
- Startup fails closed on invalid configuration

============================================================================
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.api import cashout_router, payment_router, payroll_router, webhook_router
from app.api.dependencies import configure
from app.chain.client import Web3ChainClient
from app.chain.verifier import ChainVerifier
from app.database.schema import create_schema
from app.database.session import SessionLocal, check_database_connection, engine
from app.exchange.rate_service import ExchangeRateService
from app.processor.payout_gateway import PayoutGateway
from services.bridge_config import get_bridge_config
from services.event_ingress import EventIngress
from services.ledger_store import LedgerStore
from services.settlement_engine import SettlementEngine

# Load environment variables first
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ============================================================================
# WIRING
# ============================================================================

def build_settlement_stack():
    """
    Construct the engine and ingress from validated configuration.

    Raises:
        BridgeConfigurationError: CFG-001 if required settings are missing
    """
    config = get_bridge_config(validate=True)

    store = LedgerStore(SessionLocal)
    chain_client = Web3ChainClient(
        config.rpc_url,
        config.token_contract_address,
        custody_private_key=config.custody_private_key,
    )
    verifier = ChainVerifier(chain_client, config.token_contract_address)
    gateway = PayoutGateway(
        secret_key=config.processor_secret_key,
        webhook_secret=config.processor_webhook_secret,
        base_url=config.processor_api_base,
        webhook_tolerance_seconds=config.webhook_tolerance_seconds,
    )
    rates = ExchangeRateService(store, cache_seconds=config.rate_cache_seconds)

    settlement_engine = SettlementEngine(config, store, chain_client, verifier, gateway, rates)
    ingress = EventIngress(gateway.verify_event, settlement_engine)
    return config, settlement_engine, ingress


# ============================================================================
# APPLICATION LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
        - Validate configuration (fail closed)
        - Create ledger schema
        - Wire SettlementEngine and EventIngress
    Shutdown:
        - Drop engine references, dispose database pool
    """
    logger.info("=" * 60)
    logger.info(f"[BOOT] Stable Bridge v{VERSION} starting")

    config, settlement_engine, ingress = build_settlement_stack()
    create_schema(engine)
    configure(settlement_engine, ingress, config.operator_api_token)

    logger.info(
        f"[BOOT] Settlement stack ready | currencies={config.supported_currencies} | "
        f"operator_endpoints={'enabled' if config.operator_api_token else 'disabled'}"
    )
    logger.info("=" * 60)

    yield

    configure(None, None)
    engine.dispose()
    logger.info("[SHUTDOWN] Database connections closed")


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="Stable Bridge",
    description=(
        "Fiat <-> stablecoin settlement bridge\n\n"
        "**On-ramp:** card charge in, token transfer out\n\n"
        "**Off-ramp:** token deposit in, bank payout out"
    ),
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# ============================================================================
# MIDDLEWARE
# ============================================================================

# CORS middleware (restrict in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    SOVEREIGN MANDATE: No silent failures
    """
    error_code = "SYS-500"
    logger.exception(f"[{error_code}] Unhandled exception | path={request.url.path}")

    return JSONResponse(
        status_code=500,
        content={
            "error_code": error_code,
            "message": "Internal server error. This incident has been logged.",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# ============================================================================
# ROUTERS
# ============================================================================

app.include_router(payment_router, prefix="/api/payment", tags=["On-Ramp"])
app.include_router(cashout_router, prefix="/api/cashout", tags=["Off-Ramp"])
app.include_router(payroll_router, prefix="/api/payroll", tags=["Payroll"])
app.include_router(webhook_router, prefix="/api/webhooks", tags=["Webhooks"])


# ============================================================================
# SYSTEM ENDPOINTS
# ============================================================================

@app.get(
    "/health",
    summary="Health Check",
    description="Lightweight health check for load balancers and monitoring.",
    tags=["System"]
)
async def health_check():
    try:
        check_database_connection()
        return {
            "status": "healthy",
            "database": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "error": str(e)}
        )


@app.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Exposes Prometheus metrics for observability.",
    tags=["Observability"]
)
async def metrics():
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
