# backend/consultcore/models/booking.py
"""
Booking model.

A booking is a paid, time-boxed consultation between a requester and a
provider. Its status is written only through the lifecycle service, which
uses a compare-and-swap on the status column; bookings are never deleted.
"""

from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any, Dict, FrozenSet

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.timezone_utils import ensure_utc
from ..database import Base

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "PENDING"  # Awaiting payment
    CONFIRMED = "CONFIRMED"  # Paid, session upcoming or running
    COMPLETED = "COMPLETED"  # Terminal
    CANCELLED = "CANCELLED"  # Terminal, row retained


ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return BookingStatus(to_status) in ALLOWED_TRANSITIONS[BookingStatus(from_status)]


class CancellationReason(str, Enum):
    USER_REQUEST = "user_request"
    PAYMENT_TIMEOUT = "payment_timeout"


class Booking(Base):
    """Consultation booking between a requester and a provider."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    # Parties (identities are owned by the external auth service)
    requester_id = Column(String(26), nullable=False, index=True)
    provider_id = Column(String(26), nullable=False, index=True)

    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    meeting_link = Column(Text, nullable=True)
    recording_link = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=_now_utc)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Cancellation tracking
    cancelled_by_id = Column(String(26), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)

    transactions = relationship(
        "Transaction",
        back_populates="booking",
        order_by="Transaction.created_at",
    )
    session = relationship("BookingSession", back_populates="booking", uselist=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'COMPLETED', 'CANCELLED')",
            name="ck_bookings_status",
        ),
        CheckConstraint("start_time < end_time", name="check_time_order"),
        CheckConstraint("amount >= 0", name="check_amount_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: requester={self.requester_id}, "
            f"provider={self.provider_id}, start={self.start_time}, status={self.status}>"
        )

    @property
    def start_utc(self) -> datetime:
        return ensure_utc(self.start_time)

    @property
    def end_utc(self) -> datetime:
        return ensure_utc(self.end_time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses and event payloads."""
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "provider_id": self.provider_id,
            "start_time": self.start_utc.isoformat() if self.start_time else None,
            "end_time": self.end_utc.isoformat() if self.end_time else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "meeting_link": self.meeting_link,
            "recording_link": self.recording_link,
            "created_at": ensure_utc(self.created_at).isoformat() if self.created_at else None,
            "confirmed_at": ensure_utc(self.confirmed_at).isoformat() if self.confirmed_at else None,
            "completed_at": ensure_utc(self.completed_at).isoformat() if self.completed_at else None,
            "cancelled_at": ensure_utc(self.cancelled_at).isoformat() if self.cancelled_at else None,
            "cancelled_by_id": self.cancelled_by_id,
            "cancellation_reason": self.cancellation_reason,
            "refund_amount": str(self.refund_amount) if self.refund_amount is not None else None,
        }


Index(
    "ix_booking_status_created",
    Booking.status,
    Booking.created_at,
    postgresql_where=(Booking.status == BookingStatus.PENDING.value),
)

Index(
    "ix_booking_status_end",
    Booking.status,
    Booking.end_time,
    postgresql_where=(Booking.status == BookingStatus.CONFIRMED.value),
)
