from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    giver_id = Column(String, nullable=False, index=True)
    receiver_id = Column(String, nullable=False, index=True)

    scheduled_time = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=25)
    extension_minutes = Column(Integer, nullable=False, default=0)

    gross_amount_cents = Column(Integer, nullable=False, default=0)
    platform_fee_cents = Column(Integer, nullable=False, default=0)
    net_payout_cents = Column(Integer, nullable=False, default=0)
    payment_reference = Column(String, nullable=True)

    status = Column(String, nullable=False, default="confirmed", index=True)  # confirmed/ended
    giver_joined_at = Column(DateTime(timezone=True), nullable=True)
    seeker_credit_earned = Column(Boolean, nullable=False, default=False)

    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    elapsed_seconds = Column(Integer, nullable=True)
    end_reason = Column(String, nullable=True)

    # settlement fields, written once
    payout_net_cents = Column(Integer, nullable=True)
    refund_gross_cents = Column(Integer, nullable=True)
    payout_status = Column(String, nullable=True, default="pending")  # pending/processing/completed
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class SessionState(Base):
    __tablename__ = "session_states"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    current_phase = Column(String, nullable=False, default="transmission")
    giver_can_speak = Column(Boolean, nullable=False, default=False)

    transmission_started_at = Column(DateTime(timezone=True), nullable=True)
    reflection_started_at = Column(DateTime(timezone=True), nullable=True)
    validation_started_at = Column(DateTime(timezone=True), nullable=True)
    emergence_started_at = Column(DateTime(timezone=True), nullable=True)

    extension_pending = Column(Boolean, nullable=False, default=False)
    extension_id = Column(String, nullable=True)

    ended_at = Column(DateTime(timezone=True), nullable=True)
    end_reason = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class ExtensionRequest(Base):
    __tablename__ = "extensions"
    __table_args__ = (
        # at most one in-flight negotiation per booking
        Index(
            "uq_extensions_pending_per_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True)
    extension_id = Column(String, unique=True, nullable=False, index=True)
    booking_id = Column(String, nullable=False, index=True)

    requested_by = Column(String, nullable=False)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)

    giver_response = Column(String, nullable=True)  # accepted/declined/timeout
    giver_responded_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    payment_reference = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Credit(Base):
    __tablename__ = "credits"
    __table_args__ = (
        UniqueConstraint("source_booking_id", "reason", name="uq_credits_booking_reason"),
    )

    id = Column(Integer, primary_key=True)
    credit_id = Column(String, unique=True, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    source_booking_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Milestone(Base):
    __tablename__ = "session_milestones"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class GiverAvailabilitySlot(Base):
    __tablename__ = "giver_availability"

    id = Column(Integer, primary_key=True)
    giver_id = Column(String, nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    is_booked = Column(Boolean, nullable=False, default=False)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    stripe_account_id = Column(String, nullable=True)
    stripe_onboarding_complete = Column(Boolean, nullable=False, default=False)
