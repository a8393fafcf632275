"""
============================================================================
Project Stable Bridge v1.0.0
Database Session - SQLAlchemy Engine & Session Management
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: DATABASE_URL (PostgreSQL in production, SQLite for local runs)
Side Effects: Database connections

SOVEREIGN MANDATE:
- Connection pooling with pre-ping on server databases
- All timestamps UTC
- Backend differences stay inside this module and the ledger schema

============================================================================
"""

import os
from typing import Any, Dict

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

DEFAULT_DATABASE_URL = "sqlite:///./settlement_bridge.db"


def get_database_url() -> str:
    """
    Resolve the ledger database URL from environment variables.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: None
    Side Effects: Reads from environment

    Returns:
        str: SQLAlchemy connection URL

    Environment Variables:
        DATABASE_URL: Full URL (takes precedence)
        DB_HOST / DB_PORT / DB_NAME / DB_USER / DB_PASSWORD: PostgreSQL parts,
            used when DATABASE_URL is unset and DB_HOST is set
    """
    url = os.getenv("DATABASE_URL", "").strip()
    if url:
        # Heroku-style scheme is not accepted by SQLAlchemy
        if url.startswith("postgres://"):
            url = "postgresql://" + url[len("postgres://"):]
        return url

    host = os.getenv("DB_HOST")
    if host:
        port = os.getenv("DB_PORT", "5432")
        name = os.getenv("DB_NAME", "settlement_bridge")
        user = os.getenv("DB_USER", "bridge")
        password = os.getenv("DB_PASSWORD", "")
        return f"postgresql://{user}:{password}@{host}:{port}/{name}"

    return DEFAULT_DATABASE_URL


def build_engine(database_url: str) -> Engine:
    """
    Create an engine with pool settings suited to the backend.

    Reliability Level: SOVEREIGN TIER
    Side Effects: None until first connection
    """
    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )

    kwargs: Dict[str, Any] = dict(
        poolclass=QueuePool,
        pool_size=10,           # Maintain 10 connections
        max_overflow=20,        # Allow up to 20 additional connections under load
        pool_timeout=30,        # Wait up to 30s for a connection
        pool_recycle=1800,      # Recycle connections after 30 minutes
        pool_pre_ping=True,     # Verify connections before use
        echo=echo,
        execution_options={"isolation_level": "READ COMMITTED"},
    )
    new_engine = create_engine(database_url, **kwargs)

    if new_engine.dialect.name == "postgresql":
        event.listen(new_engine, "connect", set_timezone)

    return new_engine


# ============================================================================
# CONNECTION EVENT LISTENERS
# ============================================================================

def set_timezone(dbapi_connection, connection_record):
    """
    Ensure all PostgreSQL connections use UTC timezone.

    SOVEREIGN MANDATE: All timestamps must be UTC
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("SET timezone TO 'UTC'")
    cursor.close()


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

DATABASE_URL = get_database_url()

engine = build_engine(DATABASE_URL)


# ============================================================================
# SESSION FACTORY
# ============================================================================

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection(target: Engine = None) -> bool:
    """
    Verify database connectivity.

    Returns:
        bool: True if database is reachable

    Raises:
        RuntimeError: If database connection fails
    """
    target = target or engine
    try:
        with target.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise RuntimeError(f"Database connection failed: {e}") from e


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
