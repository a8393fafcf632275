"""
============================================================================
Stable Bridge - Processor Event Ingress
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)

Authenticates signed processor events and dispatches them into the
SettlementEngine.

ACKNOWLEDGMENT POLICY:
    - Unauthenticated event: WebhookSignatureError propagates, caller rejects
    - Authenticated event: always acknowledged. Processing failures are
      logged and returned in the IngressResult, never raised, so the
      processor does not start a retry storm over a local error.

HANDLED EVENTS:
    payment_intent.succeeded       -> confirm_onramp_charge
    payment_intent.payment_failed  -> fail_onramp_charge
    payment_intent.canceled        -> cancel_onramp_charge
    payout.paid / failed / canceled -> report_payout_outcome
    payout.updated (in_transit)    -> report_payout_outcome

ERROR CODES:
    - EVT-001: Event authenticated but processing failed
    - EVT-002: Authenticated payload is not a valid event

============================================================================
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
import logging
import uuid

from app.observability.metrics import record_webhook_event
from services.settlement_errors import SettlementError, ValidationError
from services.settlement_models import SettlementResult

# Configure module logger
logger = logging.getLogger(__name__)


EVENT_CHARGE_SUCCEEDED = "payment_intent.succeeded"
EVENT_CHARGE_FAILED = "payment_intent.payment_failed"
EVENT_CHARGE_CANCELED = "payment_intent.canceled"
EVENT_PAYOUT_PAID = "payout.paid"
EVENT_PAYOUT_FAILED = "payout.failed"
EVENT_PAYOUT_CANCELED = "payout.canceled"
EVENT_PAYOUT_UPDATED = "payout.updated"

PAYOUT_EVENT_OUTCOMES = {
    EVENT_PAYOUT_PAID: "paid",
    EVENT_PAYOUT_FAILED: "failed",
    EVENT_PAYOUT_CANCELED: "canceled",
}


@dataclass
class IngressResult:
    """Outcome of one authenticated event. Always acknowledged upstream."""

    event_type: str
    event_id: Optional[str] = None
    handled: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    result: Optional[SettlementResult] = None
    correlation_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"received": True}
        if self.error is not None:
            body["error"] = self.error
            body["error_kind"] = self.error_kind
        return body


class EventIngress:
    """
    Verify-then-dispatch for processor events.

    verify_event(payload, signature_header) must return the parsed event
    dict or raise WebhookSignatureError; PayoutGateway.verify_event fits.
    """

    def __init__(self, verify_event: Callable[[bytes, Optional[str]], Dict[str, Any]], engine: Any):
        self.verify_event = verify_event
        self.engine = engine

    def handle(self, payload: bytes, signature_header: Optional[str]) -> IngressResult:
        """
        Authenticate and process one event.

        Raises:
            WebhookSignatureError: Event not authenticated
            ValidationError: Authenticated payload is not an event object
        """
        try:
            event = self.verify_event(payload, signature_header)
        except ValueError as e:
            logger.warning(f"[EVT-002] Authenticated payload is not a valid event | error={e}")
            raise ValidationError(f"Invalid event payload: {e}", error_code="EVT-002") from e

        event_type = event.get("type", "")
        event_id = event.get("id")
        correlation_id = str(uuid.uuid4())
        obj = (event.get("data") or {}).get("object") or {}

        logger.info(
            f"[EVT] Event verified | type={event_type} | event_id={event_id} | "
            f"correlation_id={correlation_id}"
        )

        outcome = IngressResult(event_type=event_type, event_id=event_id, correlation_id=correlation_id)
        try:
            outcome.result = self._dispatch(event_type, obj, correlation_id)
            outcome.handled = outcome.result is not None
            if outcome.result is not None and not outcome.result.ok:
                outcome.error = outcome.result.detail
                outcome.error_kind = outcome.result.error_kind
        except SettlementError as e:
            outcome.error = e.message
            outcome.error_kind = e.error_kind
        except Exception as e:
            # Acknowledged regardless; the ledger row (if any) holds the detail
            logger.exception(
                f"[EVT-001] Unexpected error processing event | type={event_type} | "
                f"event_id={event_id} | correlation_id={correlation_id}"
            )
            outcome.error = str(e)
            outcome.error_kind = "InternalError"

        if outcome.error is not None:
            logger.error(
                f"[EVT-001] Event processing failed | type={event_type} | event_id={event_id} | "
                f"error_kind={outcome.error_kind} | error={outcome.error} | "
                f"correlation_id={correlation_id}"
            )
            record_webhook_event(event_type, "failed", correlation_id)
        elif outcome.handled:
            record_webhook_event(event_type, "processed", correlation_id)
        else:
            logger.info(f"[EVT] Event ignored | type={event_type} | correlation_id={correlation_id}")
            record_webhook_event(event_type, "ignored", correlation_id)

        return outcome

    def _dispatch(self, event_type: str, obj: Dict[str, Any], correlation_id: str) -> Optional[SettlementResult]:
        object_id = obj.get("id")

        if event_type == EVENT_CHARGE_SUCCEEDED:
            return self.engine.confirm_onramp_charge(object_id, correlation_id=correlation_id)

        if event_type == EVENT_CHARGE_FAILED:
            last_error = obj.get("last_payment_error") or {}
            return self.engine.fail_onramp_charge(
                object_id,
                reason=last_error.get("message") or "unknown error",
                correlation_id=correlation_id,
            )

        if event_type == EVENT_CHARGE_CANCELED:
            return self.engine.cancel_onramp_charge(object_id, correlation_id=correlation_id)

        if event_type in PAYOUT_EVENT_OUTCOMES:
            return self.engine.report_payout_outcome(
                object_id,
                PAYOUT_EVENT_OUTCOMES[event_type],
                failure_code=obj.get("failure_code"),
                failure_message=obj.get("failure_message"),
                correlation_id=correlation_id,
            )

        if event_type == EVENT_PAYOUT_UPDATED and obj.get("status") == "in_transit":
            return self.engine.report_payout_outcome(object_id, "in_transit", correlation_id=correlation_id)

        return None
