"""
Tests for cancellation policy evaluation.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from booking_schemas import Booking, CancellationPolicy
from cancellation_policy import days_until, evaluate

START = datetime(2030, 6, 15, 10, 0, tzinfo=timezone.utc)


def confirmed_booking(status="confirmed"):
    return Booking(
        booking_id="BKG_POLICY",
        confirmation_number="POLICY01",
        service_type="accommodation",
        service_id="HOTEL-1",
        service_provider="HOTEL-1",
        start_date=START,
        end_date=START + timedelta(days=3),
        total_amount=Decimal("240.00"),
        currency="USD",
        status=status,
    )


@pytest.mark.unit
def test_no_free_cancellation_is_always_refused():
    policy = CancellationPolicy(free_cancellation=False)

    decision = evaluate(confirmed_booking(), policy, START - timedelta(days=60))

    assert not decision.allowed
    assert decision.refund_amount == Decimal("0.00")


@pytest.mark.unit
def test_seven_day_window_refuses_three_days_out():
    policy = CancellationPolicy(free_cancellation=True, free_cancellation_window="7_days_before")

    decision = evaluate(confirmed_booking(), policy, START - timedelta(days=3))

    assert not decision.allowed
    assert decision.days_until_start == 3
    assert decision.required_days == 7
    assert decision.to_dict()["requiredDays"] == 7


@pytest.mark.unit
def test_inside_window_gets_full_refund():
    policy = CancellationPolicy(free_cancellation=True, free_cancellation_window="7_days_before")

    decision = evaluate(confirmed_booking(), policy, START - timedelta(days=10))

    assert decision.allowed
    assert decision.refund_amount == Decimal("240.00")
    assert decision.to_dict() == {
        "allowed": True,
        "refundAmount": "240.00",
        "daysUntilStart": 10,
        "requiredDays": 7,
    }


@pytest.mark.unit
def test_partial_days_round_up():
    assert days_until(START, START - timedelta(days=6, hours=1)) == 7

    policy = CancellationPolicy(free_cancellation=True, free_cancellation_window="7_days_before")
    assert evaluate(confirmed_booking(), policy, START - timedelta(days=6, hours=1)).allowed


@pytest.mark.unit
def test_anytime_window_allows_cancellation_on_start_day():
    policy = CancellationPolicy(free_cancellation=True, free_cancellation_window="anytime")

    assert evaluate(confirmed_booking(), policy, START).allowed


@pytest.mark.unit
@pytest.mark.parametrize("status", ["cancelled", "completed"])
def test_terminal_bookings_cannot_be_cancelled_again(status):
    policy = CancellationPolicy(free_cancellation=True)

    decision = evaluate(confirmed_booking(status), policy, START - timedelta(days=30))

    assert not decision.allowed
    assert decision.reason == "already terminal"
