"""
Booking state machine as pure functions.

Each function takes a frozen ``Booking`` snapshot and returns a ``Transition``:
the new snapshot, the status the store must still hold for the write to apply,
the timeline steps to append with it, and the side-effect intents (hold to
cancel, refund to issue, counters to adjust) for the orchestrator to run.
Nothing here touches the network or the database.

    pending -> reserved -> confirmed -> completed
    pending -> approved -> reserved
    pending | approved | reserved | payment_failed -> cancelled
    pending -> declined
    reserved -> payment_failed | failed
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from booking_errors import InvalidTransition
from booking_schemas import (
    Booking,
    BookingCreateRequest,
    CancellationPolicy,
    FrozenModel,
    Reservation,
    TimelineStep,
    to_money,
)
from cancellation_policy import CancellationDecision


class CancelHold(FrozenModel):
    hold_id: str
    reason: str


class IssueRefund(FrozenModel):
    transaction_id: str
    amount: Optional[Decimal] = None
    reason: str


class AdjustBookingCount(FrozenModel):
    service_type: str
    resource_id: str
    increment: int


class BlockCalendar(FrozenModel):
    guide_id: str
    start: datetime
    end: datetime


class UnblockCalendar(FrozenModel):
    guide_id: str
    start: datetime
    end: datetime


class Transition:
    def __init__(
        self,
        booking: Booking,
        expected_status: str,
        steps: Sequence[TimelineStep] = (),
        intents: Sequence[FrozenModel] = (),
        claims: bool = False,
    ):
        self.booking = booking
        self.expected_status = expected_status
        self.steps = list(steps)
        self.intents = list(intents)
        # the store stamps a fresh claim sequence number with this write
        self.claims = claims


def step(name: str, outcome: str, message: str, now: datetime) -> TimelineStep:
    return TimelineStep(step=name, outcome=outcome, message=message, timestamp=now)


def _require(booking: Booking, action: str, allowed: Sequence[str]) -> None:
    if booking.status not in allowed:
        raise InvalidTransition(
            message=f"Cannot {action} a booking that is {booking.status}",
            details={"bookingId": booking.booking_id, "status": booking.status, "action": action},
        )


def _update(booking: Booking, now: datetime, **changes) -> Booking:
    changes["updated_at"] = now
    return booking.model_copy(update=changes)


def new_booking(
    request: BookingCreateRequest,
    booking_id: str,
    confirmation_number: str,
    policy: CancellationPolicy,
    default_currency: str,
    now: datetime,
) -> Booking:
    """Pending booking with the provider's policy snapshotted."""
    date_range = request.resolved_range()
    return Booking(
        booking_id=booking_id,
        confirmation_number=confirmation_number,
        user_id=request.user_id,
        service_type=request.service_type,
        service_id=request.service_id,
        service_provider=request.service_provider or request.service_id,
        service_name=request.service_name,
        start_date=date_range.start,
        end_date=date_range.end,
        quantity=request.quantity,
        total_amount=request.total_amount,
        currency=request.currency or default_currency,
        status="pending",
        payment={"status": "pending", "method": request.payment_method, "amount": request.total_amount},
        cancellation_policy=policy,
        contact_info=request.contact_info,
        notes=request.notes,
        timeline=[step("booking_created", "completed", "Booking record created", now)],
        created_at=now,
        updated_at=now,
    )


def approve(booking: Booking, now: datetime) -> Transition:
    _require(booking, "approve", ("pending",))
    return Transition(
        _update(booking, now, status="approved"),
        "pending",
        [step("booking_approved", "completed", "Booking approved by provider", now)],
    )


def decline(booking: Booking, reason: Optional[str], now: datetime) -> Transition:
    _require(booking, "decline", ("pending",))
    notes = booking.notes
    if reason:
        notes = f"{notes}\n[DECLINED]: {reason}" if notes else f"[DECLINED]: {reason}"
    return Transition(
        _update(booking, now, status="declined", notes=notes),
        "pending",
        [step("booking_declined", "completed", reason or "Booking declined by provider", now)],
    )


def claim_for_payment(booking: Booking, now: datetime) -> Transition:
    """Take the booking out of pending/approved so no other request can pay it."""
    _require(booking, "pay", ("approved", "pending"))
    return Transition(
        _update(booking, now, status="reserved", claimed_at=now),
        booking.status,
        [step("payment_started", "completed", f"Payment started from {booking.status}", now)],
        claims=True,
    )


def revert_to_pending(booking: Booking, message: str, now: datetime,
                      step_name: str = "availability_conflict") -> Transition:
    """Loser of a payment race, or an aborted payment, goes back to pending."""
    _require(booking, "revert", ("reserved",))
    return Transition(
        _update(booking, now, status="pending", claimed_at=None, claim_seq=None),
        "reserved",
        [step(step_name, "failed", message, now)],
    )


def record_hold(booking: Booking, hold_id: str, temp_hold_id: Optional[str], expires_at: datetime,
                now: datetime) -> Transition:
    _require(booking, "reserve", ("pending",))
    reservation = Reservation(
        hold_id=hold_id,
        temp_hold_id=temp_hold_id or hold_id,
        hold_status="pending",
        expires_at=expires_at,
    )
    return Transition(
        _update(booking, now, status="reserved", reservation=reservation, claimed_at=now),
        "pending",
        [step("reservation_created", "completed", f"Temporary reservation created: {hold_id}", now)],
        claims=True,
    )


def record_charge(booking: Booking, transaction_id: str, amount: Decimal, processing_fee: Optional[Decimal],
                  now: datetime) -> Transition:
    """
    Money was taken but the booking is not confirmed yet, so the payment stays
    ``pending`` until the hold is confirmed.
    """
    _require(booking, "charge", ("reserved",))
    payment = booking.payment.model_copy(update={
        "transaction_id": transaction_id,
        "status": "pending",
        "amount": to_money(amount),
        "processing_fee": processing_fee,
        "paid_at": now,
        "error_code": None,
    })
    return Transition(
        _update(booking, now, payment=payment),
        "reserved",
        [step("payment_charged", "completed", f"Payment processed: {transaction_id}", now)],
    )


def record_payment_skipped(booking: Booking, now: datetime) -> Transition:
    _require(booking, "charge", ("reserved",))
    payment = booking.payment.model_copy(update={"method": "bypass", "amount": booking.total_amount})
    return Transition(
        _update(booking, now, payment=payment),
        "reserved",
        [step("payment_skipped", "skipped", "Payment not required by configuration", now)],
    )


def confirm(booking: Booking, now: datetime, confirmation_id: Optional[str] = None) -> Transition:
    """
    reserved -> confirmed with payment completed. A booking with a hold needs
    the hold confirmation id; payment can only complete once the hold is firm.
    """
    _require(booking, "confirm", ("reserved",))
    changes = {"status": "confirmed", "claimed_at": None, "claim_seq": None}
    steps = []
    if booking.reservation is not None:
        if not confirmation_id:
            raise InvalidTransition(
                message="Reservation hold must be confirmed before payment completes",
                details={"bookingId": booking.booking_id},
            )
        changes["reservation"] = booking.reservation.model_copy(update={
            "hold_status": "confirmed",
            "confirmation_id": confirmation_id,
            "confirmed_at": now,
        })
        steps.append(step("reservation_confirmed", "completed", f"Reservation confirmed: {confirmation_id}", now))

    changes["payment"] = booking.payment.model_copy(update={
        "status": "completed",
        "paid_at": booking.payment.paid_at or now,
    })
    steps.append(step("booking_confirmed", "completed", f"Booking confirmed with number: {booking.confirmation_number}", now))

    intents: List[FrozenModel] = [AdjustBookingCount(
        service_type=booking.service_type, resource_id=booking.resource_key, increment=1,
    )]
    if booking.service_type == "guide":
        intents.append(BlockCalendar(guide_id=booking.service_provider, start=booking.start_date, end=booking.end_date))

    return Transition(_update(booking, now, **changes), "reserved", steps, intents)


def _release_intents(booking: Booking, reason: str, refund_amount: Optional[Decimal],
                     refund_statuses: Sequence[str] = ("pending", "completed")) -> List[FrozenModel]:
    """Refund first, then the hold: the reverse of hold -> charge."""
    intents: List[FrozenModel] = []
    payment = booking.payment
    if payment.transaction_id and payment.status in refund_statuses:
        intents.append(IssueRefund(transaction_id=payment.transaction_id, amount=refund_amount, reason=reason))
    reservation = booking.reservation
    if reservation is not None and reservation.hold_id and reservation.hold_status in ("pending", "confirmed"):
        intents.append(CancelHold(hold_id=reservation.hold_id, reason=reason))
    return intents


def inverse(intent: FrozenModel) -> FrozenModel:
    """The intent that undoes a confirm side effect."""
    if isinstance(intent, AdjustBookingCount):
        return intent.model_copy(update={"increment": -intent.increment})
    if isinstance(intent, BlockCalendar):
        return UnblockCalendar(guide_id=intent.guide_id, start=intent.start, end=intent.end)
    raise TypeError(f"no inverse for {type(intent).__name__}")


def undo_confirmation(booking: Booking) -> List[FrozenModel]:
    """
    Inverses of the confirm side effects that the timeline records as done.
    Side effects still running elsewhere undo themselves once they see the
    booking is no longer confirmed.
    """
    done = {s.step for s in booking.timeline if s.outcome == "completed"}
    intents: List[FrozenModel] = []
    if "booking_count_updated" in done:
        intents.append(AdjustBookingCount(
            service_type=booking.service_type, resource_id=booking.resource_key, increment=-1,
        ))
    if booking.service_type == "guide" and "calendar_blocked" in done:
        intents.append(UnblockCalendar(guide_id=booking.service_provider, start=booking.start_date,
                                       end=booking.end_date))
    return intents


def payment_failed(booking: Booking, error_code: str, now: datetime) -> Transition:
    _require(booking, "fail payment", ("reserved",))
    payment = booking.payment.model_copy(update={"status": "failed", "error_code": error_code})
    updated = _update(booking, now, status="payment_failed", payment=payment, claimed_at=None, claim_seq=None,
                      failure_reason=error_code)
    return Transition(
        updated,
        "reserved",
        [step("payment_failed", "failed", f"Payment declined: {error_code}", now)],
        _release_intents(updated, f"Payment failed: {error_code}", None),
    )


def fail(booking: Booking, reason: str, now: datetime) -> Transition:
    """Any mid-saga failure. Intents undo whatever was already done."""
    if booking.is_terminal:
        raise InvalidTransition(details={"bookingId": booking.booking_id, "status": booking.status, "action": "fail"})
    updated = _update(booking, now, status="failed", failure_reason=reason, claimed_at=None, claim_seq=None)
    return Transition(
        updated,
        booking.status,
        [step("booking_failed", "failed", reason, now)],
        _release_intents(booking, reason, None),
    )


def expire_hold(booking: Booking, now: datetime) -> Transition:
    """An unconfirmed hold past its expiry: the booking fails and the hold is released."""
    reservation = booking.reservation
    if reservation is None or not reservation.is_expired(now):
        raise InvalidTransition(details={"bookingId": booking.booking_id, "action": "expire"})
    expired = reservation.model_copy(update={"hold_status": "expired"})
    updated = _update(booking, now, status="failed", reservation=expired, claimed_at=None, claim_seq=None,
                      failure_reason="HOLD_EXPIRED")
    intents: List[FrozenModel] = [CancelHold(hold_id=reservation.hold_id, reason="Hold expired")]
    if booking.payment.transaction_id and booking.payment.status in ("pending", "completed"):
        intents.insert(0, IssueRefund(transaction_id=booking.payment.transaction_id, reason="Hold expired"))
    return Transition(
        updated,
        booking.status,
        [step("reservation_expired", "failed", f"Hold {reservation.hold_id} expired", now)],
        intents,
    )


def cancel(booking: Booking, reason: str, now: datetime, decision: Optional[CancellationDecision] = None) -> Transition:
    """
    Cancel from any non-terminal state. A confirmed booking needs an allowing
    ``decision`` from the policy evaluator and also undoes what confirmation did.
    """
    if booking.is_terminal:
        raise InvalidTransition(
            message=f"Cannot cancel a booking that is {booking.status}",
            details={"bookingId": booking.booking_id, "status": booking.status, "action": "cancel"},
        )

    intents: List[FrozenModel] = []
    refund_amount = None
    if booking.status == "confirmed":
        if decision is None or not decision.allowed:
            raise InvalidTransition(details={"bookingId": booking.booking_id, "action": "cancel"})
        refund_amount = decision.refund_amount
        intents.extend(undo_confirmation(booking))
    # a pending charge belongs to the payment still in flight; that flow refunds it
    intents.extend(_release_intents(booking, reason, refund_amount, refund_statuses=("completed",)))

    updated = _update(booking, now, status="cancelled", cancellation_reason=reason, cancelled_at=now,
                      claimed_at=None, claim_seq=None)
    return Transition(
        updated,
        booking.status,
        [step("booking_cancelled", "completed", f"Booking cancelled: {reason}", now)],
        intents,
    )


def complete(booking: Booking, now: datetime) -> Transition:
    _require(booking, "complete", ("confirmed",))
    if now < booking.end_date:
        raise InvalidTransition(
            message="Cannot complete booking before end date",
            details={"bookingId": booking.booking_id, "endDate": booking.end_date.isoformat()},
        )
    return Transition(
        _update(booking, now, status="completed"),
        "confirmed",
        [step("booking_completed", "completed", "Booking completed", now)],
    )


def apply_refund(booking: Booking, intent: IssueRefund, refund_id: Optional[str], refunded: Optional[Decimal],
                 now: datetime) -> Booking:
    amount = refunded if refunded is not None else (intent.amount if intent.amount is not None else booking.payment.amount)
    amount = to_money(amount if amount is not None else booking.total_amount)
    status = "partially_refunded" if amount < booking.total_amount else "refunded"
    payment = booking.payment.model_copy(update={
        "status": status,
        "refund_id": refund_id,
        "refund_amount": amount,
        "refund_date": now,
        "refund_reason": intent.reason,
    })
    return booking.model_copy(update={"payment": payment})


def apply_hold_released(booking: Booking) -> Booking:
    reservation = booking.reservation
    if reservation is None or reservation.hold_status == "expired":
        return booking
    return booking.model_copy(update={"reservation": reservation.model_copy(update={"hold_status": "cancelled"})})
