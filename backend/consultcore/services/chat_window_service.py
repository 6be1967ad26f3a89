"""
Post-session chat window.

The window opens when a session ends and lasts ``chat_window_hours``. Expiry
is applied by the lifecycle sweep rather than at read time, so the stored
``chat_expires_at`` is the single source of truth for whether chat is open.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.timezone_utils import ensure_utc, now_utc
from ..events.lifecycle_events import ChatWindowClosed, ChatWindowOpened
from ..events.publisher import EventPublisher
from ..models.booking_session import BookingSession
from ..repositories.factory import RepositoryFactory
from .base import BaseService


def chat_expiry_for(ended_at: datetime, window: Optional[timedelta] = None) -> datetime:
    return ensure_utc(ended_at) + (window or timedelta(hours=settings.chat_window_hours))


def is_chat_open(session: Optional[BookingSession], now: Optional[datetime] = None) -> bool:
    if session is None or session.chat_expires_at is None:
        return False
    current = ensure_utc(now) if now is not None else now_utc()
    return current <= ensure_utc(session.chat_expires_at)


class ChatWindowService(BaseService):
    """Sole writer of BookingSession.chat_expires_at."""

    def __init__(self, db: Session, window: Optional[timedelta] = None):
        super().__init__(db)
        self.session_repository = RepositoryFactory.create_booking_session_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))
        self.window = window or timedelta(hours=settings.chat_window_hours)

    def open(self, session: BookingSession, ended_at: datetime) -> datetime:
        """Set the window from the session end. Does not commit."""
        expires_at = chat_expiry_for(ended_at, self.window)
        session.chat_expires_at = expires_at
        self.session_repository.flush()
        self.publisher.publish(
            ChatWindowOpened(
                booking_id=session.booking_id,
                session_id=session.id,
                expires_at=expires_at,
            )
        )
        self.logger.info(
            "Chat window opened",
            extra={"booking_id": session.booking_id, "expires_at": expires_at.isoformat()},
        )
        return expires_at

    def is_open(self, session: Optional[BookingSession], now: Optional[datetime] = None) -> bool:
        return is_chat_open(session, now)

    def close(self, session: BookingSession, now: datetime) -> bool:
        """Clear one elapsed window. Does not commit; False if already cleared or not elapsed."""
        if not self.session_repository.clear_chat_if_expired(session.id, now):
            return False
        session.chat_expires_at = None
        self.publisher.publish(
            ChatWindowClosed(
                booking_id=session.booking_id,
                session_id=session.id,
                closed_at=ensure_utc(now),
            )
        )
        return True

