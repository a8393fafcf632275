"""
============================================================================
Project Stable Bridge v1.0.0
Ledger Schema - Settlement Tables
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: SQLAlchemy engine (PostgreSQL or SQLite)
Side Effects: Creates tables and indexes if absent

SOVEREIGN MANDATE:
- payments.payment_intent_id is unique (one ledger row per charge)
- cashouts.tx_hash_onchain is unique (one settlement per deposit)
- DDL is dialect-neutral so the store never branches on backend

============================================================================
"""

import logging
from typing import List

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


# ============================================================================
# DDL
# ============================================================================

SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS payments (
        id VARCHAR(36) PRIMARY KEY,
        payment_intent_id VARCHAR(255) NOT NULL UNIQUE,
        wallet_address VARCHAR(42) NOT NULL,
        amount_fiat NUMERIC(18, 2) NOT NULL,
        fiat_currency VARCHAR(10) NOT NULL,
        amount_token NUMERIC(18, 6) NOT NULL,
        exchange_rate NUMERIC(18, 8) NOT NULL,
        tx_hash VARCHAR(66),
        block_number BIGINT,
        status VARCHAR(20) NOT NULL,
        error_message TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payments_wallet ON payments (wallet_address)",
    "CREATE INDEX IF NOT EXISTS idx_payments_status ON payments (status)",
    """
    CREATE TABLE IF NOT EXISTS cashouts (
        id VARCHAR(36) PRIMARY KEY,
        wallet_address VARCHAR(42) NOT NULL,
        amount_token NUMERIC(18, 6) NOT NULL,
        fiat_currency VARCHAR(10) NOT NULL,
        fiat_amount NUMERIC(18, 2) NOT NULL,
        exchange_rate NUMERIC(18, 8) NOT NULL,
        tx_hash_onchain VARCHAR(66) NOT NULL UNIQUE,
        payout_id VARCHAR(255),
        bank_account_ref VARCHAR(255) NOT NULL,
        sub_account_ref VARCHAR(255),
        status VARCHAR(20) NOT NULL,
        error_message TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cashouts_wallet ON cashouts (wallet_address)",
    "CREATE INDEX IF NOT EXISTS idx_cashouts_payout ON cashouts (payout_id)",
    """
    CREATE TABLE IF NOT EXISTS payrolls (
        id VARCHAR(36) PRIMARY KEY,
        payroll_id VARCHAR(36) NOT NULL,
        employer_address VARCHAR(42) NOT NULL,
        employee_address VARCHAR(42) NOT NULL,
        amount_token NUMERIC(18, 6) NOT NULL,
        tx_hash VARCHAR(66),
        block_number BIGINT,
        status VARCHAR(20) NOT NULL,
        error_message TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_payrolls_batch ON payrolls (payroll_id)",
    "CREATE INDEX IF NOT EXISTS idx_payrolls_employer ON payrolls (employer_address)",
    "CREATE INDEX IF NOT EXISTS idx_payrolls_employee ON payrolls (employee_address)",
    "CREATE INDEX IF NOT EXISTS idx_payrolls_tx_hash ON payrolls (tx_hash)",
    """
    CREATE TABLE IF NOT EXISTS exchange_rates (
        id VARCHAR(36) PRIMARY KEY,
        from_currency VARCHAR(10) NOT NULL,
        to_currency VARCHAR(10) NOT NULL,
        rate NUMERIC(24, 8) NOT NULL,
        source VARCHAR(50) NOT NULL,
        timestamp TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_exchange_rates_pair "
    "ON exchange_rates (from_currency, to_currency, timestamp)",
]


def create_schema(engine: Engine) -> None:
    """
    Create every ledger table and index if absent.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: Connectable engine
    Side Effects: Executes DDL in a single transaction
    """
    with engine.begin() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(text(statement))

    logger.info(
        f"[LEDGER-SCHEMA] Schema ensured | "
        f"statements={len(SCHEMA_STATEMENTS)} | dialect={engine.dialect.name}"
    )
