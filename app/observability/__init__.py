"""
============================================================================
Project Stable Bridge v1.0.0
Observability Module - Settlement Prometheus Metrics
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: None
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    SETTLEMENTS_TOTAL,
    IDEMPOTENT_REPLAYS,
    SETTLEMENT_FAILURES,
    CHAIN_TRANSFER_RETRIES,
    WEBHOOK_EVENTS,
    CHAIN_TRANSFER_SECONDS,
    record_settlement,
    record_idempotent_replay,
    record_settlement_failure,
    record_transfer_retry,
    record_transfer_duration,
    record_webhook_event,
)

__all__ = [
    "SETTLEMENTS_TOTAL",
    "IDEMPOTENT_REPLAYS",
    "SETTLEMENT_FAILURES",
    "CHAIN_TRANSFER_RETRIES",
    "WEBHOOK_EVENTS",
    "CHAIN_TRANSFER_SECONDS",
    "record_settlement",
    "record_idempotent_replay",
    "record_settlement_failure",
    "record_transfer_retry",
    "record_transfer_duration",
    "record_webhook_event",
]
