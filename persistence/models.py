from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship
from .db import Base


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(64), unique=True, index=True, nullable=False)
    confirmation_number = Column(String(16), unique=True, index=True, nullable=False)
    # unique once assigned; NULLs do not collide
    transaction_id = Column(String(128), unique=True, nullable=True)
    user_id = Column(String, index=True, nullable=True)

    service_type = Column(String(32), nullable=False)
    service_id = Column(String, index=True, nullable=False)
    service_provider = Column(String, nullable=False)
    service_name = Column(String, nullable=True)
    resource_key = Column(String, index=True, nullable=False)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    quantity = Column(Integer, default=1)

    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    status = Column(String(32), default="pending", index=True, nullable=False)

    # JSON sub-documents; written whole from the pydantic snapshot
    reservation = Column(JSON, nullable=True)
    payment = Column(JSON, default={})
    cancellation_policy = Column(JSON, default={})
    contact_info = Column(JSON, nullable=True)

    notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    # order of payment claims across all instances; drawn from booking_claims
    claim_seq = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    timeline = relationship(
        "TimelineStepModel",
        back_populates="booking",
        order_by="TimelineStepModel.id",
        lazy="selectin",
    )


class TimelineStepModel(Base):
    __tablename__ = "booking_timeline"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(64), ForeignKey("bookings.booking_id"), index=True, nullable=False)
    step = Column(String(64), nullable=False)
    outcome = Column(String(16), nullable=False)
    message = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    booking = relationship("BookingModel", back_populates="timeline")


class BookingClaimModel(Base):
    __tablename__ = "booking_claims"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(64), ForeignKey("bookings.booking_id"), index=True, nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=False)
