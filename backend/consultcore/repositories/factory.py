# backend/consultcore/repositories/factory.py
"""
Repository Factory.

Centralizes repository creation so services and tasks share one way of
building their data access objects.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .booking_session_repository import BookingSessionRepository
    from .event_outbox_repository import EventOutboxRepository
    from .otp_repository import OTPRecordRepository
    from .transaction_repository import TransactionRepository
    from .webhook_event_repository import WebhookEventRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_transaction_repository(db: Session) -> "TransactionRepository":
        from .transaction_repository import TransactionRepository

        return TransactionRepository(db)

    @staticmethod
    def create_booking_session_repository(db: Session) -> "BookingSessionRepository":
        from .booking_session_repository import BookingSessionRepository

        return BookingSessionRepository(db)

    @staticmethod
    def create_otp_repository(db: Session) -> "OTPRecordRepository":
        from .otp_repository import OTPRecordRepository

        return OTPRecordRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> "EventOutboxRepository":
        from .event_outbox_repository import EventOutboxRepository

        return EventOutboxRepository(db)

    @staticmethod
    def create_webhook_event_repository(db: Session) -> "WebhookEventRepository":
        from .webhook_event_repository import WebhookEventRepository

        return WebhookEventRepository(db)
