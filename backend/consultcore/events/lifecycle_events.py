"""Booking lifecycle events published through the outbox."""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class BookingStatusChanged:
    """Fired after every booking status transition."""

    booking_id: str
    from_status: Optional[str]  # None when the booking is created
    to_status: str
    trigger: str  # 'request', 'payment', 'user', 'sweep'
    actor_id: Optional[str]
    changed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def idempotency_key(self) -> str:
        # each status is entered at most once per booking
        return f"booking:{self.booking_id}:status:{self.to_status}"


@dataclass
class ChatWindowOpened:
    """Fired when post-session chat becomes available."""

    booking_id: str
    session_id: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def idempotency_key(self) -> str:
        return f"chat:{self.booking_id}:opened"


@dataclass
class ChatWindowClosed:
    """Fired when the sweep clears an elapsed chat window."""

    booking_id: str
    session_id: str
    closed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def idempotency_key(self) -> str:
        return f"chat:{self.booking_id}:closed"


@dataclass
class RefundIssued:
    """Fired after a cancellation refund attempt, successful or not."""

    booking_id: str
    transaction_id: Optional[str]
    gateway: str
    amount: str
    status: str  # 'refunded' or 'failed'
    refund_ref: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def idempotency_key(self) -> str:
        return f"refund:{self.booking_id}"
