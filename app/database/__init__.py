# ============================================================================
# Project Stable Bridge v1.0.0
# Database Module - SQLAlchemy Session Management & Ledger Schema
# ============================================================================

from app.database.session import engine, SessionLocal, build_engine, check_database_connection
from app.database.schema import create_schema

__all__ = ["engine", "SessionLocal", "build_engine", "check_database_connection", "create_schema"]
