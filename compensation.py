"""
Best-effort execution of side-effect intents (compensations and post-confirm
side effects). ``compensate`` never raises: it returns a result that the
orchestrator records in the timeline, so a failing cleanup can never replace
the error the caller is shown.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from booking_schemas import TimelineStep
from booking_state import AdjustBookingCount, BlockCalendar, CancelHold, IssueRefund, UnblockCalendar
from logging_setup import get_logger, log_with_context

logger = get_logger(__name__)


class CompensationResult:
    def __init__(
        self,
        intent,
        success: bool,
        step_name: str,
        message: str,
        refund_id: Optional[str] = None,
        refunded_amount: Optional[Decimal] = None,
    ):
        self.intent = intent
        self.success = success
        self.step_name = step_name
        self.message = message
        self.refund_id = refund_id
        self.refunded_amount = refunded_amount

    def to_step(self, now: datetime) -> TimelineStep:
        return TimelineStep(
            step=self.step_name,
            outcome="completed" if self.success else "failed",
            message=self.message,
            timestamp=now,
        )


def _run(intent, hold_client, payment_client, provider_client) -> CompensationResult:
    if isinstance(intent, IssueRefund):
        refund = payment_client.refund(intent.transaction_id, intent.amount, intent.reason)
        if refund.success:
            return CompensationResult(
                intent, True, "payment_refunded", f"Refund processed: {refund.refund_id}",
                refund_id=refund.refund_id, refunded_amount=refund.amount,
            )
        return CompensationResult(intent, False, "refund_failed", f"Refund failed: {refund.error_code}")

    if isinstance(intent, CancelHold):
        if hold_client.cancel_hold(intent.hold_id, intent.reason):
            return CompensationResult(intent, True, "reservation_cancelled", f"Reservation released: {intent.hold_id}")
        return CompensationResult(intent, False, "reservation_cancel_failed", f"Could not release hold {intent.hold_id}")

    if isinstance(intent, AdjustBookingCount):
        provider_client.update_booking_count(intent.service_type, intent.resource_id, intent.increment)
        sign = "+" if intent.increment > 0 else ""
        return CompensationResult(intent, True, "booking_count_updated", f"Booking count {sign}{intent.increment}")

    if isinstance(intent, BlockCalendar):
        provider_client.block_guide_availability(intent.guide_id, intent.start, intent.end)
        return CompensationResult(intent, True, "calendar_blocked", f"Guide {intent.guide_id} calendar blocked")

    if isinstance(intent, UnblockCalendar):
        provider_client.unblock_guide_availability(intent.guide_id, intent.start, intent.end)
        return CompensationResult(intent, True, "calendar_unblocked", f"Guide {intent.guide_id} calendar released")

    raise TypeError(f"unknown intent {type(intent).__name__}")


def compensate(intent, hold_client=None, payment_client=None, provider_client=None) -> CompensationResult:
    """Run one intent once. No retries; failures are logged and returned."""
    try:
        result = _run(intent, hold_client, payment_client, provider_client)
    except Exception as exc:
        logger.exception("Side effect %s failed", type(intent).__name__)
        return CompensationResult(intent, False, f"{_step_prefix(intent)}_failed", f"{type(intent).__name__} failed: {exc}")

    level = "info" if result.success else "error"
    log_with_context(logger, level, "Side effect executed", intent=type(intent).__name__, success=result.success,
                     detail=result.message)
    return result


def _step_prefix(intent) -> str:
    return {
        IssueRefund: "refund",
        CancelHold: "reservation_cancel",
        AdjustBookingCount: "booking_count",
        BlockCalendar: "calendar_block",
        UnblockCalendar: "calendar_unblock",
    }.get(type(intent), "side_effect")
