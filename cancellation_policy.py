"""
Cancellation policy evaluation over the policy snapshot taken at booking time.

Refunds are always full when cancellation is allowed; there is no partial or
prorated tier.
"""
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from booking_schemas import Booking, CancellationPolicy, ensure_utc

WINDOW_REQUIRED_DAYS = {
    "anytime": 0,
    "1_day_before": 1,
    "7_days_before": 7,
    "14_days_before": 14,
}

ONE_DAY = timedelta(days=1)


class CancellationDecision:
    def __init__(
        self,
        allowed: bool,
        refund_amount: Decimal = Decimal("0.00"),
        reason: Optional[str] = None,
        days_until_start: Optional[int] = None,
        required_days: Optional[int] = None,
    ):
        self.allowed = allowed
        self.refund_amount = refund_amount
        self.reason = reason
        self.days_until_start = days_until_start
        self.required_days = required_days

    def to_dict(self) -> dict:
        data = {"allowed": self.allowed, "refundAmount": str(self.refund_amount)}
        if self.reason:
            data["reason"] = self.reason
        if self.days_until_start is not None:
            data["daysUntilStart"] = self.days_until_start
        if self.required_days is not None:
            data["requiredDays"] = self.required_days
        return data


def days_until(start: datetime, now: datetime) -> int:
    """Whole days until ``start``, rounded up."""
    return math.ceil((ensure_utc(start) - ensure_utc(now)) / ONE_DAY)


def evaluate(booking: Booking, policy: CancellationPolicy, now: datetime) -> CancellationDecision:
    if booking.status in ("cancelled", "completed"):
        return CancellationDecision(False, reason="already terminal")

    if not policy.free_cancellation:
        return CancellationDecision(False, reason="This booking does not allow free cancellation")

    days_until_start = days_until(booking.start_date, now)
    required_days = WINDOW_REQUIRED_DAYS[policy.free_cancellation_window]

    if days_until_start < required_days:
        return CancellationDecision(
            False,
            reason=(
                f"Free cancellation requires at least {required_days} day(s) notice; "
                f"the booking starts in {days_until_start} day(s)"
            ),
            days_until_start=days_until_start,
            required_days=required_days,
        )

    return CancellationDecision(
        True,
        refund_amount=booking.total_amount,
        days_until_start=days_until_start,
        required_days=required_days,
    )
