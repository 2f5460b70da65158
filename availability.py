"""
Availability conflict checker.

Two ranges [s1, e1) and [s2, e2) conflict iff s1 < e2 and s2 < e1, so a
checkout and a check-in on the same instant do not collide.
"""
from datetime import datetime
from typing import Iterable, List, Optional

from booking_schemas import Booking, ensure_utc
from logging_setup import get_logger

logger = get_logger(__name__)


def ranges_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    return ensure_utc(start1) < ensure_utc(end2) and ensure_utc(start2) < ensure_utc(end1)


class ConflictResult:
    def __init__(self, conflict: bool, conflicting_booking: Optional[Booking] = None):
        self.conflict = conflict
        self.conflicting_booking = conflicting_booking

    def __bool__(self):
        return self.conflict

    def conflict_details(self) -> dict:
        """Conflicting range echoed back to the client."""
        if not self.conflicting_booking:
            return {}
        other = self.conflicting_booking
        return {
            "conflictingBookingId": other.booking_id,
            "conflictingRange": {
                "start": other.start_date.isoformat(),
                "end": other.end_date.isoformat(),
            },
        }


class ConflictChecker:
    """
    Looks for active bookings on the same resource.

    Active means ``confirmed``; for guides also ``approved`` when approval locks
    the calendar; and ``reserved`` (payment in flight) when the caller passes
    its own claim so that only earlier claims count against it.
    """

    def __init__(self, store, guide_approval_locks_calendar: bool = True, checked_service_types: Iterable[str] = None):
        self.store = store
        self.guide_approval_locks_calendar = guide_approval_locks_calendar
        self.checked_service_types = set(checked_service_types or ("guide", "transportation"))

    def active_statuses(self, service_type: Optional[str]) -> List[str]:
        statuses = ["confirmed"]
        if service_type == "guide" and self.guide_approval_locks_calendar:
            statuses.append("approved")
        return statuses

    def applies_to(self, service_type: str) -> bool:
        return service_type in self.checked_service_types

    def has_conflict(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[str] = None,
        service_type: Optional[str] = None,
        claim: Optional[int] = None,
    ) -> ConflictResult:
        """
        Args:
            provider_id: resource key (the guide for guide bookings)
            start, end: half-open range to test
            exclude_booking_id: the caller's own booking
            service_type: selects the active-status set
            claim: the caller's claim sequence number; reserved bookings
                holding a lower number are treated as active
        """
        if service_type is not None and not self.applies_to(service_type):
            return ConflictResult(False)

        statuses = self.active_statuses(service_type)
        if claim is not None:
            statuses.append("reserved")

        candidates = self.store.find_overlapping(
            provider_id, ensure_utc(start), ensure_utc(end), statuses, exclude_booking_id=exclude_booking_id
        )
        for other in candidates:
            if not ranges_overlap(start, end, other.start_date, other.end_date):
                continue
            if other.status == "reserved":
                if other.claim_seq is None or other.claim_seq >= claim:
                    # later claimant; it yields to us
                    continue
            logger.info(
                "Conflict on %s: [%s, %s) overlaps booking %s (%s)",
                provider_id, start, end, other.booking_id, other.status,
            )
            return ConflictResult(True, other)
        return ConflictResult(False)
