"""Booking session satellite table: when the consultation ran and how long chat stays open."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, String, func
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class BookingSession(Base):
    """Execution record for a single booking, created lazily on first start."""

    __tablename__ = "booking_sessions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id"),
        nullable=False,
        unique=True,
    )

    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    # Null means chat is disabled; only the chat window service writes this.
    chat_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    booking = relationship("Booking", back_populates="session")

    def __repr__(self) -> str:
        return (
            f"<BookingSession booking={self.booking_id} started={self.started_at} "
            f"ended={self.ended_at} chat_until={self.chat_expires_at}>"
        )
