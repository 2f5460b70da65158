import random
import string
import time
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


ServiceType = Literal["accommodation", "transportation", "guide"]
BookingStatus = Literal[
    "pending",
    "reserved",
    "approved",
    "confirmed",
    "payment_failed",
    "cancelled",
    "declined",
    "completed",
    "failed",
]
HoldStatus = Literal["pending", "confirmed", "cancelled", "expired"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded", "partially_refunded"]
StepOutcome = Literal["completed", "failed", "skipped"]
CancellationWindow = Literal["anytime", "1_day_before", "7_days_before", "14_days_before"]

TERMINAL_STATUSES = ("cancelled", "declined", "completed", "failed")

CENT = Decimal("0.01")
_CONFIRMATION_CHARS = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_money(value) -> Decimal:
    """Quantize an amount to 2 decimal places (half-up)."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def resource_key(service_type: str, service_id: str, service_provider: Optional[str]) -> str:
    if service_type == "guide" and service_provider:
        return service_provider
    return service_id


def generate_booking_id() -> str:
    suffix = "".join(random.choices(_CONFIRMATION_CHARS, k=6))
    return f"BKG_{int(time.time() * 1000)}_{suffix}"


def generate_confirmation_number() -> str:
    return "".join(random.choices(_CONFIRMATION_CHARS, k=8))


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class DateRange(FrozenModel):
    """Half-open interval [start, end)."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _ordered(self):
        if self.start >= self.end:
            raise ValueError("date range end must be after start")
        return self

    def overlaps(self, other: "DateRange") -> bool:
        return self.start < other.end and other.start < self.end


class ContactInfo(FrozenModel):
    email: str
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    emergency_contact: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("invalid email address")
        return value.strip().lower()


class CancellationPolicy(FrozenModel):
    free_cancellation: bool = False
    free_cancellation_window: CancellationWindow = "anytime"


class Reservation(FrozenModel):
    hold_id: Optional[str] = None
    temp_hold_id: Optional[str] = None
    hold_status: HoldStatus = "pending"
    confirmation_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        # a confirmed hold no longer expires
        if self.hold_status == "expired":
            return True
        if self.hold_status != "pending" or self.expires_at is None:
            return False
        return ensure_utc(now) >= ensure_utc(self.expires_at)


class PaymentDetails(FrozenModel):
    transaction_id: Optional[str] = None
    status: PaymentStatus = "pending"
    method: str = "card"
    amount: Optional[Decimal] = None
    processing_fee: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_date: Optional[datetime] = None
    refund_reason: Optional[str] = None
    error_code: Optional[str] = None


class TimelineStep(FrozenModel):
    step: str
    outcome: StepOutcome
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Booking(FrozenModel):
    """
    Immutable snapshot of a booking. Transitions produce new snapshots with
    ``model_copy(update=...)``; only the store persists them.
    """

    booking_id: str
    confirmation_number: str
    user_id: Optional[str] = None
    service_type: ServiceType
    service_id: str
    service_provider: str
    service_name: Optional[str] = None
    start_date: datetime
    end_date: datetime
    quantity: int = 1
    total_amount: Decimal
    currency: str
    status: BookingStatus = "pending"
    reservation: Optional[Reservation] = None
    payment: PaymentDetails = Field(default_factory=PaymentDetails)
    cancellation_policy: CancellationPolicy = Field(default_factory=CancellationPolicy)
    contact_info: Optional[ContactInfo] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    claimed_at: Optional[datetime] = None
    claim_seq: Optional[int] = None
    timeline: List[TimelineStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def transaction_id(self) -> Optional[str]:
        return self.payment.transaction_id

    @property
    def date_range(self) -> DateRange:
        return DateRange(start=self.start_date, end=self.end_date)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def resource_key(self) -> str:
        """Calendar key used for overlap checks: the guide for guide bookings, the service otherwise."""
        return resource_key(self.service_type, self.service_id, self.service_provider)


class BookingCreateRequest(CamelModel):
    """
    Inbound booking payload. Either ``dateRange`` or ``tourDate`` (with an
    optional ``durationDays``) must be given.
    """

    service_type: ServiceType
    service_id: str = Field(min_length=1)
    service_provider: Optional[str] = None
    service_name: Optional[str] = None
    user_id: Optional[str] = None
    date_range: Optional[DateRange] = None
    tour_date: Optional[datetime] = None
    duration_days: int = Field(default=1, ge=1)
    quantity: int = Field(default=1, ge=1)
    total_amount: Decimal = Field(ge=0)
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Z]{3}$")
    contact_info: ContactInfo
    payment_method: str = "card"
    cancellation_policy: Optional[CancellationPolicy] = None
    notes: Optional[str] = None

    @field_validator("total_amount")
    @classmethod
    def _money(cls, value: Decimal) -> Decimal:
        return to_money(value)

    @model_validator(mode="after")
    def _has_dates(self):
        if self.date_range is None and self.tour_date is None:
            raise ValueError("either dateRange or tourDate is required")
        return self

    def resolved_range(self) -> DateRange:
        if self.date_range is not None:
            return self.date_range
        start = ensure_utc(self.tour_date)
        return DateRange(start=start, end=start + timedelta(days=self.duration_days))

    @property
    def resource_key(self) -> str:
        return resource_key(self.service_type, self.service_id, self.service_provider)
