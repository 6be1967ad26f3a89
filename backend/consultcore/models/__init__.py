"""
Database models for the booking lifecycle engine.

- Booking: the consultation and its lifecycle status
- Transaction: gateway payments and refunds
- BookingSession: session timing and chat window
- OTPRecord: completion codes
- EventOutbox / WebhookEvent: outbound events and inbound callback ledger
"""

from .booking import ALLOWED_TRANSITIONS, Booking, BookingStatus, CancellationReason
from .booking_session import BookingSession
from .event_outbox import EventOutbox, EventOutboxStatus
from .otp_record import OTPPurpose, OTPRecord
from .payment import Transaction, TransactionKind, TransactionStatus
from .webhook_event import WebhookEvent

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Booking",
    "BookingSession",
    "BookingStatus",
    "CancellationReason",
    "EventOutbox",
    "EventOutboxStatus",
    "OTPPurpose",
    "OTPRecord",
    "Transaction",
    "TransactionKind",
    "TransactionStatus",
    "WebhookEvent",
]
