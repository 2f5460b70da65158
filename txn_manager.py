from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

import booking_state
from availability import ConflictResult
from booking_errors import (
    BookingError,
    CancellationNotAllowed,
    ConflictError,
    HoldExpired,
    InvalidTransition,
    NotFoundError,
    PaymentDeclined,
    StateConflict,
    UpstreamUnavailable,
    ValidationError,
)
from booking_schemas import (
    Booking,
    BookingCreateRequest,
    TimelineStep,
    generate_booking_id,
    generate_confirmation_number,
    utcnow,
)
from booking_state import CancelHold, IssueRefund, Transition
from cancellation_policy import CancellationDecision, evaluate
from compensation import CompensationResult, compensate
from logging_setup import get_logger, log_with_context, set_correlation_id
from settings import Settings, settings as default_settings

logger = get_logger(__name__)

UNAVAILABLE_PAYMENT_CODES = ("SERVICE_UNAVAILABLE", "TIMEOUT")


class TransactionManager:
    """
    Booking saga orchestrator (hold -> charge -> confirm -> compensate).

    Collaborators are injected:
      store:            BookingStore (create / find_by_id / update_status / append_timeline_step)
      hold_client:      .create_hold(resource_id, date_range, quantity, owner_ref),
                        .confirm_hold(hold_id, owner_ref, expires_at), .cancel_hold(hold_id, reason)
      payment_client:   .charge(...), .refund(transaction_id, amount, reason), .status(transaction_id)
      conflict_checker: .has_conflict(...), .applies_to(service_type)
      provider_client:  .get_cancellation_policy(...), .update_booking_count(...),
                        .block_guide_availability(...), .unblock_guide_availability(...)

    Every status change is a conditional update on the expected prior status, so
    two calls for the same booking can never both apply the same transition.
    """

    def __init__(
        self,
        store,
        hold_client,
        payment_client,
        conflict_checker,
        provider_client,
        config: Settings = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.hold_client = hold_client
        self.payment_client = payment_client
        self.conflict_checker = conflict_checker
        self.provider_client = provider_client
        self.config = config or default_settings
        self.clock = clock

    # ------------------------------------------------------------------ helpers

    def get(self, booking_id: str) -> Booking:
        booking = self.store.find_by_id(booking_id)
        if booking is None:
            raise NotFoundError(booking_id)
        return booking

    def _apply(self, transition: Transition, extra_steps: List[TimelineStep] = ()) -> Booking:
        return self.store.update_status(
            transition.booking,
            transition.expected_status,
            steps=list(extra_steps) + transition.steps,
            claim=transition.claims,
        )

    def _execute(self, booking: Booking, intents, now: datetime) -> Tuple[Booking, List[CompensationResult]]:
        """Run intents in order; fold successful refunds / hold releases into the snapshot."""
        results = []
        for intent in intents:
            result = compensate(
                intent,
                hold_client=self.hold_client,
                payment_client=self.payment_client,
                provider_client=self.provider_client,
            )
            if result.success and isinstance(intent, IssueRefund):
                booking = booking_state.apply_refund(booking, intent, result.refund_id, result.refunded_amount, now)
            elif result.success and isinstance(intent, CancelHold):
                booking = booking_state.apply_hold_released(booking)
            results.append(result)
        return booking, results

    def _run_side_effects(self, booking: Booking, intents, now: datetime) -> Booking:
        """
        Post-confirmation side effects. Failures are logged, never rolled back.

        A cancel may land while these run. Each effect is skipped once the
        booking is cancelled, and an effect whose step the store refuses (the
        cancel won the race to the timeline) is undone here, because the cancel
        only undoes effects it finds recorded.
        """
        booking_id = booking.booking_id
        for intent in intents:
            current = self.store.find_by_id(booking_id)
            if current is None or current.status == "cancelled":
                logger.info("Booking %s cancelled; skipping %s", booking_id, type(intent).__name__)
                continue
            result = compensate(intent, provider_client=self.provider_client)
            if not result.success:
                logger.warning("Side effect failed for booking %s: %s", booking_id, result.message)
            if self.store.append_timeline_step(booking_id, result.to_step(now)) or not result.success:
                continue
            undo = compensate(booking_state.inverse(intent), provider_client=self.provider_client)
            log_with_context(logger, "info" if undo.success else "error", "Side effect undone after cancel",
                             booking_id=booking_id, detail=undo.message)
        return self.get(booking_id)

    def _check_conflict(self, booking: Booking, claim: Optional[int] = None) -> ConflictResult:
        if not self.conflict_checker.applies_to(booking.service_type):
            return ConflictResult(False)
        return self.conflict_checker.has_conflict(
            booking.resource_key,
            booking.start_date,
            booking.end_date,
            exclude_booking_id=booking.booking_id,
            service_type=booking.service_type,
            claim=claim,
        )

    @staticmethod
    def _parse_request(payload: Union[dict, BookingCreateRequest]) -> BookingCreateRequest:
        if isinstance(payload, BookingCreateRequest):
            return payload
        try:
            return BookingCreateRequest.model_validate(payload)
        except PydanticValidationError as exc:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            raise ValidationError(details={"errors": errors}) from exc

    # -------------------------------------------------------------- transitions

    def create(self, payload: Union[dict, BookingCreateRequest]) -> Booking:
        """
        Validate, check the provider calendar and persist a pending booking with a
        snapshot of the provider's cancellation policy. Nothing is reserved yet.
        """
        request = self._parse_request(payload)
        now = self.clock()
        date_range = request.resolved_range()

        if self.conflict_checker.applies_to(request.service_type):
            conflict = self.conflict_checker.has_conflict(
                request.resource_key, date_range.start, date_range.end, service_type=request.service_type,
            )
            if conflict:
                raise ConflictError(details=conflict.conflict_details())

        policy = request.cancellation_policy
        if policy is None:
            policy = self.provider_client.get_cancellation_policy(request.service_type, request.service_id)

        booking = booking_state.new_booking(
            request,
            booking_id=generate_booking_id(),
            confirmation_number=generate_confirmation_number(),
            policy=policy,
            default_currency=self.config.default_currency,
            now=now,
        )
        booking = self.store.create(booking)
        log_with_context(
            logger, "info", "Pending booking created",
            booking_id=booking.booking_id, confirmation_number=booking.confirmation_number,
            service_type=booking.service_type,
        )
        return booking

    def approve(self, booking_id: str) -> Booking:
        booking = self.get(booking_id)
        transition = booking_state.approve(booking, self.clock())
        # another booking may have been approved or confirmed since creation
        conflict = self._check_conflict(booking)
        if conflict:
            raise ConflictError(details=conflict.conflict_details())
        booking = self._apply(transition)
        log_with_context(logger, "info", "Booking approved", booking_id=booking_id)
        return booking

    def decline(self, booking_id: str, reason: Optional[str] = None) -> Booking:
        booking = self.get(booking_id)
        booking = self._apply(booking_state.decline(booking, reason, self.clock()))
        log_with_context(logger, "info", "Booking declined", booking_id=booking_id, reason=reason)
        return booking

    def pay(self, booking_id: str) -> Booking:
        """
        Charge a pending or approved booking that has no reservation hold
        (provider-mediated flows such as guides) and confirm it.

        The booking is first claimed (-> reserved) so no other request can pay it,
        then the calendar is re-checked one final time: of two overlapping bookings
        paying at once, the later claimant is reverted to pending.

        Any unexpected error after the claim releases it again: an uncharged
        booking goes back to pending, a charged one is refunded and failed.
        """
        set_correlation_id(booking_id)
        booking = self.get(booking_id)
        booking = self._apply(booking_state.claim_for_payment(booking, self.clock()))
        transaction_id = None

        try:
            conflict = self._check_conflict(booking, claim=booking.claim_seq)
            if conflict:
                details = conflict.conflict_details()
                message = f"Dates taken by booking {details.get('conflictingBookingId')}"
                self._apply(booking_state.revert_to_pending(booking, message, self.clock()))
                log_with_context(logger, "info", "Payment aborted: calendar conflict", booking_id=booking_id,
                                 **details)
                raise ConflictError(details=details)

            if self.config.payment_required:
                charge = self.payment_client.charge(
                    booking.total_amount,
                    booking.currency,
                    booking.payment.method,
                    booking.contact_info.model_dump() if booking.contact_info else {},
                    booking.booking_id,
                )
                if not charge.success:
                    self._handle_charge_failure(booking, charge.error_code)
                transaction_id = charge.transaction_id
                charged = booking.model_copy(update={
                    "payment": booking.payment.model_copy(update={"transaction_id": transaction_id}),
                })
                try:
                    booking = self._apply(booking_state.record_charge(
                        booking, transaction_id, charge.amount or booking.total_amount, charge.processing_fee,
                        self.clock(),
                    ))
                except StateConflict:
                    # cancelled while we were charging; the charge is ours to give back
                    self._refund_orphaned_charge(charged, "Booking changed during payment")
                    raise
            else:
                booking = self._apply(booking_state.record_payment_skipped(booking, self.clock()))

            transition = booking_state.confirm(booking, self.clock())
            try:
                booking = self._apply(transition)
            except StateConflict:
                self._refund_orphaned_charge(booking, "Booking changed during payment")
                raise
        except (ConflictError, PaymentDeclined, UpstreamUnavailable, StateConflict):
            # already recorded on the booking
            raise
        except Exception as exc:
            self._release_claim(booking_id, transaction_id, exc)
            raise

        log_with_context(logger, "info", "Booking confirmed", booking_id=booking_id,
                         transaction_id=booking.transaction_id)
        return self._run_side_effects(booking, transition.intents, self.clock())

    def _release_claim(self, booking_id: str, transaction_id: Optional[str], exc: Exception) -> None:
        """Undo a payment claim after an unexpected error. Never raises."""
        if transaction_id:
            self._compensate_saga(booking_id, None, transaction_id, exc)
            return
        current = self.store.find_by_id(booking_id)
        if current is None or current.status != "reserved":
            return
        logger.warning("Payment for booking %s aborted (%s); releasing claim", booking_id, type(exc).__name__)
        try:
            self._apply(booking_state.revert_to_pending(
                current, f"Payment aborted: {type(exc).__name__}", self.clock(), step_name="payment_aborted",
            ))
        except BookingError as update_error:
            logger.error("Could not release claim on booking %s: %s", booking_id, update_error.error_code)

    def _handle_charge_failure(self, booking: Booking, error_code: str) -> None:
        """Record a failed charge on a claimed booking and raise the matching error."""
        now = self.clock()
        if error_code == "SERVICE_UNAVAILABLE" and booking.reservation is None:
            # nothing was charged; give the booking back so the caller may retry
            self._apply(booking_state.revert_to_pending(booking, "Payment service unavailable", now))
            raise UpstreamUnavailable(details={"service": "payment", "bookingId": booking.booking_id})

        transition = booking_state.payment_failed(booking, error_code, now)
        updated, results = self._execute(transition.booking, transition.intents, now)
        self.store.update_status(
            updated, transition.expected_status, steps=transition.steps + [r.to_step(now) for r in results],
        )
        if error_code in UNAVAILABLE_PAYMENT_CODES:
            raise UpstreamUnavailable(details={"service": "payment", "bookingId": booking.booking_id})
        raise PaymentDeclined(error_code, details={"bookingId": booking.booking_id})

    def _refund_orphaned_charge(self, booking: Booking, reason: str) -> None:
        transaction_id = booking.payment.transaction_id
        if not transaction_id:
            return
        current = self.store.find_by_id(booking.booking_id)
        if current is not None and current.payment.status in ("refunded", "partially_refunded"):
            return
        result = compensate(IssueRefund(transaction_id=transaction_id, reason=reason),
                            payment_client=self.payment_client)
        if not result.success:
            logger.error("Orphaned charge %s on booking %s could not be refunded", transaction_id, booking.booking_id)

    def evaluate_cancellation(self, booking_id: str) -> CancellationDecision:
        booking = self.get(booking_id)
        return evaluate(booking, booking.cancellation_policy, self.clock())

    def cancel(self, booking_id: str, reason: str = "User cancellation") -> Booking:
        """
        Cancel a non-terminal booking. Confirmed bookings must pass the
        cancellation policy; their refund, counters and calendar block are undone.
        The status flips first so no other transition can win afterwards; the
        cancellation step, summarising the clean-up, is the last timeline entry.
        """
        set_correlation_id(booking_id)
        booking = self.get(booking_id)
        now = self.clock()

        decision = None
        if booking.status in ("confirmed", "cancelled", "completed"):
            decision = evaluate(booking, booking.cancellation_policy, now)
            if not decision.allowed:
                raise CancellationNotAllowed(message=decision.reason, details=decision.to_dict())

        transition = booking_state.cancel(booking, reason, now, decision)
        cancelled = self.store.update_status(transition.booking, transition.expected_status)

        intents = transition.intents
        if booking.status == "confirmed":
            # confirm side effects recorded after our read are only visible now
            # that the status has flipped; the rest undo themselves
            intents = booking_state.undo_confirmation(cancelled) + [
                i for i in intents if isinstance(i, (IssueRefund, CancelHold))
            ]
        cancelled, results = self._execute(cancelled, intents, now)
        cancellation_step = transition.steps[0]
        if results:
            summary = "; ".join(r.message for r in results)
            cancellation_step = cancellation_step.model_copy(update={"message": f"{cancellation_step.message} ({summary})"})
        booking = self.store.update_status(cancelled, "cancelled", steps=[cancellation_step])

        log_with_context(logger, "info", "Booking cancelled", booking_id=booking_id, reason=reason,
                         refund_status=booking.payment.status)
        return booking

    def complete(self, booking_id: str) -> Booking:
        booking = self.get(booking_id)
        booking = self._apply(booking_state.complete(booking, self.clock()))
        log_with_context(logger, "info", "Booking completed", booking_id=booking_id)
        return booking

    # ------------------------------------------------------------- full saga

    def book(self, payload: Union[dict, BookingCreateRequest]) -> Booking:
        """
        End-to-end saga: create pending record -> hold -> charge -> confirm hold
        -> finalize. On any failure the steps already taken are compensated in
        reverse order (refund, then release the hold) before the error surfaces,
        and the booking is marked failed.
        """
        booking = self.create(payload)
        booking_id = booking.booking_id
        set_correlation_id(booking_id)
        hold_id = None
        transaction_id = None

        try:
            hold = self.hold_client.create_hold(
                booking.service_id, booking.date_range, booking.quantity, booking_id,
            )
            hold_id = hold.hold_id
            booking = self._apply(booking_state.record_hold(
                booking, hold.hold_id, hold.temp_hold_id, hold.expires_at, self.clock(),
            ))

            conflict = self._check_conflict(booking, claim=booking.claim_seq)
            if conflict:
                raise ConflictError(details=conflict.conflict_details())

            if self.config.payment_required:
                charge = self.payment_client.charge(
                    booking.total_amount,
                    booking.currency,
                    booking.payment.method,
                    booking.contact_info.model_dump() if booking.contact_info else {},
                    booking_id,
                )
                if not charge.success:
                    self._handle_charge_failure(booking, charge.error_code)
                transaction_id = charge.transaction_id
                booking = self._apply(booking_state.record_charge(
                    booking, charge.transaction_id, charge.amount or booking.total_amount, charge.processing_fee,
                    self.clock(),
                ))
            else:
                booking = self._apply(booking_state.record_payment_skipped(booking, self.clock()))

            # an expired hold is gone; never try to confirm it
            if booking.reservation.is_expired(self.clock()):
                raise HoldExpired(details={"holdId": hold_id})
            confirmation_id = self.hold_client.confirm_hold(hold_id, booking_id, booking.reservation.expires_at)

            transition = booking_state.confirm(booking, self.clock(), confirmation_id)
            booking = self._apply(transition)
        except Exception as exc:
            # a declined charge was already recorded and its hold released
            if not (isinstance(exc, (PaymentDeclined, UpstreamUnavailable))
                    and self._is_payment_failure_recorded(booking_id)):
                self._compensate_saga(booking_id, hold_id, transaction_id, exc)
            raise

        log_with_context(logger, "info", "Saga completed", booking_id=booking_id,
                         confirmation_number=booking.confirmation_number)
        return self._run_side_effects(booking, transition.intents, self.clock())

    def _is_payment_failure_recorded(self, booking_id: str) -> bool:
        current = self.store.find_by_id(booking_id)
        return current is not None and current.status == "payment_failed"

    def _compensate_saga(self, booking_id: str, hold_id: Optional[str], transaction_id: Optional[str],
                         exc: Exception) -> None:
        """
        Undo whatever the saga did, then mark the booking failed. Never raises:
        the original error is what the caller sees.
        """
        reason = exc.error_code if isinstance(exc, BookingError) else type(exc).__name__
        now = self.clock()
        logger.warning("Saga for booking %s failed (%s); compensating", booking_id, reason)

        current = self.store.find_by_id(booking_id)
        intents = []
        if transaction_id and (current is None or current.payment.status not in ("refunded", "partially_refunded")):
            intents.append(IssueRefund(transaction_id=transaction_id, reason=f"Booking failed: {reason}"))
        if hold_id:
            intents.append(CancelHold(hold_id=hold_id, reason=f"Booking failed: {reason}"))

        if current is None or current.is_terminal:
            # a concurrent cancel already finished the record; only release what we hold
            for intent in intents:
                compensate(intent, hold_client=self.hold_client, payment_client=self.payment_client)
            return

        try:
            transition = booking_state.fail(current, reason, now)
            if isinstance(exc, HoldExpired) and current.reservation is not None:
                expired = current.reservation.model_copy(update={"hold_status": "expired"})
                transition.booking = transition.booking.model_copy(update={"reservation": expired})
            updated, results = self._execute(transition.booking, intents, now)
            self.store.update_status(
                updated, transition.expected_status, steps=[r.to_step(now) for r in results] + transition.steps,
            )
        except BookingError as update_error:
            logger.error("Could not mark booking %s failed: %s", booking_id, update_error.error_code)

    # ------------------------------------------------------------------ sweep

    def sweep(self, now: Optional[datetime] = None) -> dict:
        """
        Expire unconfirmed holds past their deadline, release payment claims
        abandoned for longer than a hold lives, and complete confirmed bookings
        whose end date has passed. Safe to run repeatedly.
        """
        now = now or self.clock()
        expired = released = completed = 0
        stale_before = now - timedelta(minutes=self.config.hold_ttl_minutes)

        for booking in self.store.find_by_status(["reserved"]):
            if booking.reservation is None:
                if booking.claimed_at is not None and booking.claimed_at <= stale_before:
                    released += self._release_stale_claim(booking, now)
                continue
            if not booking.reservation.is_expired(now):
                continue
            transition = booking_state.expire_hold(booking, now)
            updated, results = self._execute(transition.booking, transition.intents, now)
            try:
                self.store.update_status(
                    updated, transition.expected_status, steps=transition.steps + [r.to_step(now) for r in results],
                )
                expired += 1
            except StateConflict:
                logger.info("Booking %s moved on during sweep", booking.booking_id)

        for booking in self.store.find_by_status(["confirmed"]):
            if booking.end_date > now:
                continue
            try:
                self._apply(booking_state.complete(booking, now))
                completed += 1
            except (StateConflict, InvalidTransition):
                logger.info("Booking %s moved on during sweep", booking.booking_id)

        log_with_context(logger, "info", "Sweep finished", expired=expired, released=released, completed=completed)
        return {"expired": expired, "released": released, "completed": completed}

    def _release_stale_claim(self, booking: Booking, now: datetime) -> int:
        """A charged claim is failed and refunded; an uncharged one goes back to pending."""
        if booking.payment.transaction_id:
            transition = booking_state.fail(booking, "PAYMENT_ABANDONED", now)
        else:
            transition = booking_state.revert_to_pending(booking, "Payment abandoned", now, step_name="payment_aborted")
        try:
            updated = self.store.update_status(transition.booking, transition.expected_status, steps=transition.steps)
        except StateConflict:
            logger.info("Booking %s moved on during sweep", booking.booking_id)
            return 0
        logger.warning("Released stale payment claim on booking %s", booking.booking_id)
        if transition.intents:
            updated, results = self._execute(updated, transition.intents, now)
            self.store.update_status(updated, updated.status, steps=[r.to_step(now) for r in results])
        return 1
