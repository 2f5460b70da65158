"""
Booking record store.

The booking row is the only shared mutable resource of the saga. Status changes
go through ``update_status``, a single ``UPDATE ... WHERE status = :expected``
statement, so two requests can never both win the same transition.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from booking_errors import StateConflict
from booking_schemas import (
    Booking,
    CancellationPolicy,
    ContactInfo,
    PaymentDetails,
    Reservation,
    TimelineStep,
    ensure_utc,
    generate_confirmation_number,
    utcnow,
)
from logging_setup import get_logger
from .models import BookingClaimModel, BookingModel, TimelineStepModel

logger = get_logger(__name__)

CANCELLATION_STEP = "booking_cancelled"
_MAX_CONFIRMATION_RETRIES = 5


def _utc_or_none(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def model_to_pydantic(db_booking: BookingModel) -> Booking:
    """Convert a BookingModel row (with its timeline) into a Booking snapshot."""
    return Booking(
        booking_id=db_booking.booking_id,
        confirmation_number=db_booking.confirmation_number,
        user_id=db_booking.user_id,
        service_type=db_booking.service_type,
        service_id=db_booking.service_id,
        service_provider=db_booking.service_provider,
        service_name=db_booking.service_name,
        start_date=ensure_utc(db_booking.start_date),
        end_date=ensure_utc(db_booking.end_date),
        quantity=db_booking.quantity or 1,
        total_amount=db_booking.total_amount,
        currency=db_booking.currency,
        status=db_booking.status,
        reservation=Reservation.model_validate(db_booking.reservation) if db_booking.reservation else None,
        payment=PaymentDetails.model_validate(db_booking.payment or {}),
        cancellation_policy=CancellationPolicy.model_validate(db_booking.cancellation_policy or {}),
        contact_info=ContactInfo.model_validate(db_booking.contact_info) if db_booking.contact_info else None,
        notes=db_booking.notes,
        cancellation_reason=db_booking.cancellation_reason,
        cancelled_at=_utc_or_none(db_booking.cancelled_at),
        failure_reason=db_booking.failure_reason,
        claimed_at=_utc_or_none(db_booking.claimed_at),
        claim_seq=db_booking.claim_seq,
        timeline=[
            TimelineStep(
                step=s.step,
                outcome=s.outcome,
                message=s.message,
                timestamp=ensure_utc(s.timestamp),
            )
            for s in db_booking.timeline
        ],
        created_at=ensure_utc(db_booking.created_at),
        updated_at=ensure_utc(db_booking.updated_at),
    )


def _dump(model) -> Optional[dict]:
    if model is None:
        return None
    return model.model_dump(mode="json")


def _mutable_values(booking: Booking) -> dict:
    """Columns a transition is allowed to change."""
    return {
        "status": booking.status,
        "transaction_id": booking.payment.transaction_id,
        "reservation": _dump(booking.reservation),
        "payment": _dump(booking.payment),
        "notes": booking.notes,
        "cancellation_reason": booking.cancellation_reason,
        "cancelled_at": booking.cancelled_at,
        "failure_reason": booking.failure_reason,
        "claimed_at": booking.claimed_at,
        "claim_seq": booking.claim_seq,
        "updated_at": utcnow(),
    }


def _step_row(booking_id: str, step: TimelineStep) -> TimelineStepModel:
    return TimelineStepModel(
        booking_id=booking_id,
        step=step.step,
        outcome=step.outcome,
        message=step.message,
        timestamp=step.timestamp,
    )


class BookingStore:
    """
    Durable booking records. There is deliberately no delete: cancelled and
    failed bookings stay for audit.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, booking: Booking) -> Booking:
        """
        Insert a new booking and its initial timeline. A colliding confirmation
        number is regenerated.
        """
        for _ in range(_MAX_CONFIRMATION_RETRIES):
            with self.session_factory() as db:
                row = BookingModel(
                    booking_id=booking.booking_id,
                    confirmation_number=booking.confirmation_number,
                    user_id=booking.user_id,
                    service_type=booking.service_type,
                    service_id=booking.service_id,
                    service_provider=booking.service_provider,
                    service_name=booking.service_name,
                    resource_key=booking.resource_key,
                    start_date=booking.start_date,
                    end_date=booking.end_date,
                    quantity=booking.quantity,
                    total_amount=booking.total_amount,
                    currency=booking.currency,
                    cancellation_policy=_dump(booking.cancellation_policy),
                    contact_info=_dump(booking.contact_info),
                    created_at=booking.created_at,
                    **_mutable_values(booking),
                )
                db.add(row)
                for step in booking.timeline:
                    db.add(_step_row(booking.booking_id, step))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    if self._confirmation_taken(booking.confirmation_number):
                        logger.info("Confirmation number collision, regenerating")
                        booking = booking.model_copy(update={"confirmation_number": generate_confirmation_number()})
                        continue
                    raise
            return self.find_by_id(booking.booking_id)
        raise RuntimeError("could not allocate a unique confirmation number")

    def _confirmation_taken(self, confirmation_number: str) -> bool:
        with self.session_factory() as db:
            stmt = select(BookingModel.id).where(BookingModel.confirmation_number == confirmation_number)
            return db.execute(stmt).first() is not None

    def find_by_id(self, booking_id: str) -> Optional[Booking]:
        with self.session_factory() as db:
            row = db.execute(select(BookingModel).where(BookingModel.booking_id == booking_id)).scalar_one_or_none()
            return model_to_pydantic(row) if row else None

    def find_by_confirmation_number(self, confirmation_number: str) -> Optional[Booking]:
        with self.session_factory() as db:
            stmt = select(BookingModel).where(BookingModel.confirmation_number == confirmation_number)
            row = db.execute(stmt).scalar_one_or_none()
            return model_to_pydantic(row) if row else None

    def find_by_status(self, statuses: Iterable[str]) -> List[Booking]:
        with self.session_factory() as db:
            stmt = select(BookingModel).where(BookingModel.status.in_(list(statuses))).order_by(BookingModel.id)
            return [model_to_pydantic(r) for r in db.execute(stmt).scalars()]

    def find_overlapping(
        self,
        resource_key: str,
        start: datetime,
        end: datetime,
        statuses: Iterable[str],
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """Bookings on ``resource_key`` in ``statuses`` whose [start, end) overlaps [start, end)."""
        stmt = select(BookingModel).where(
            BookingModel.resource_key == resource_key,
            BookingModel.status.in_(list(statuses)),
            BookingModel.start_date < end,
            BookingModel.end_date > start,
        )
        if exclude_booking_id:
            stmt = stmt.where(BookingModel.booking_id != exclude_booking_id)
        with self.session_factory() as db:
            rows = db.execute(stmt.order_by(BookingModel.id)).scalars()
            return [model_to_pydantic(r) for r in rows]

    def update_status(
        self,
        booking: Booking,
        expected_status: str,
        steps: Sequence[TimelineStep] = (),
        claim: bool = False,
    ) -> Booking:
        """
        Persist the snapshot ``booking`` (its status and mutable fields) only if
        the stored status is still ``expected_status``, appending ``steps`` in
        the same transaction.

        With ``claim`` the write also draws the next number from the
        ``booking_claims`` sequence and stores it as ``claim_seq``. A lost
        update rolls the draw back with it.

        Raises:
            StateConflict: another request already moved the booking on
        """
        values = _mutable_values(booking)
        with self.session_factory() as db:
            if claim:
                claim_row = BookingClaimModel(booking_id=booking.booking_id, claimed_at=booking.claimed_at or utcnow())
                db.add(claim_row)
                db.flush()
                values["claim_seq"] = claim_row.id
            stmt = (
                update(BookingModel)
                .where(
                    BookingModel.booking_id == booking.booking_id,
                    BookingModel.status == expected_status,
                )
                .values(**values)
            )
            result = db.execute(stmt)
            if result.rowcount != 1:
                db.rollback()
                current = db.execute(
                    select(BookingModel.status).where(BookingModel.booking_id == booking.booking_id)
                ).scalar_one_or_none()
                logger.warning(
                    "Conditional update lost: booking %s expected %s, found %s",
                    booking.booking_id,
                    expected_status,
                    current,
                )
                raise StateConflict(
                    details={
                        "bookingId": booking.booking_id,
                        "expectedStatus": expected_status,
                        "currentStatus": current,
                    }
                )
            for step in steps:
                db.add(_step_row(booking.booking_id, step))
            db.commit()
        return self.find_by_id(booking.booking_id)

    def append_timeline_step(self, booking_id: str, step: TimelineStep) -> bool:
        """
        Append one step. Returns False (and appends nothing) when the booking is
        cancelled or unknown; only the cancellation step itself may follow a cancel.
        The status row is locked so a concurrent cancel orders strictly before
        or after the append.
        """
        with self.session_factory() as db:
            status = db.execute(
                select(BookingModel.status).where(BookingModel.booking_id == booking_id).with_for_update()
            ).scalar_one_or_none()
            if status is None:
                return False
            if status == "cancelled" and step.step != CANCELLATION_STEP:
                logger.warning("Timeline step %s dropped: booking %s is cancelled", step.step, booking_id)
                return False
            db.add(_step_row(booking_id, step))
            db.commit()
        return True
