"""Booking session data access."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.timezone_utils import ensure_utc
from ..models.booking_session import BookingSession
from .base_repository import BaseRepository


class BookingSessionRepository(BaseRepository[BookingSession]):
    def __init__(self, db: Session):
        super().__init__(db, BookingSession)

    def get_by_booking(self, booking_id: str) -> Optional[BookingSession]:
        return self.find_one_by(booking_id=booking_id)

    def find_expired_chats(self, now: datetime, limit: int = 200) -> List[BookingSession]:
        query = (
            self._build_query()
            .filter(BookingSession.chat_expires_at.isnot(None))
            .filter(BookingSession.chat_expires_at < ensure_utc(now))
            .order_by(BookingSession.chat_expires_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def clear_chat_if_expired(self, session_id: str, now: datetime) -> bool:
        """Null the chat expiry only if it is still set and already elapsed."""
        result = self.db.execute(
            update(BookingSession)
            .where(BookingSession.id == session_id)
            .where(BookingSession.chat_expires_at.isnot(None))
            .where(BookingSession.chat_expires_at < ensure_utc(now))
            .values(chat_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
