# backend/consultcore/repositories/booking_repository.py
"""
Booking data access.

Status writes go through ``transition_status``, a single conditional UPDATE
so that of two racing writers exactly one observes rowcount == 1.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..core.timezone_utils import ensure_utc
from ..models.booking import Booking, BookingStatus, can_transition
from ..models.booking_session import BookingSession
from .base_repository import BaseRepository


def _status_values(statuses: Iterable[Any]) -> List[str]:
    return [s.value if isinstance(s, BookingStatus) else str(s) for s in statuses]


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def transition_status(
        self,
        booking_id: str,
        from_statuses: Iterable[Any],
        to_status: BookingStatus,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-swap the booking status.

        Returns False when the row was not in one of ``from_statuses``; the
        caller decides whether that is a conflict or an already-applied event.
        Raises ValueError for an edge missing from ``ALLOWED_TRANSITIONS``.
        """
        expected = _status_values(from_statuses)
        illegal = [s for s in expected if not can_transition(s, to_status.value)]
        if illegal or not expected:
            raise ValueError(
                f"Illegal booking transition {illegal or expected} -> {to_status.value}"
            )
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status.in_(expected))
            .values(status=to_status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as exc:
            self.logger.error(
                "Booking status update failed",
                extra={"booking_id": booking_id, "to_status": to_status.value, "error": str(exc)},
            )
            raise RepositoryException(f"Failed to update booking status: {exc}") from exc
        return result.rowcount == 1

    def current_status(self, booking_id: str) -> Optional[str]:
        return self.db.execute(
            select(Booking.status).where(Booking.id == booking_id)
        ).scalar_one_or_none()

    def find_stale_pending(self, created_before: datetime, limit: int = 200) -> List[Booking]:
        """PENDING bookings created strictly before the cutoff, oldest first."""
        query = (
            self._build_query()
            .filter(Booking.status == BookingStatus.PENDING.value)
            .filter(Booking.created_at < ensure_utc(created_before))
            .order_by(Booking.created_at.asc(), Booking.id.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def find_ended_without_session(
        self, ended_after: datetime, ended_before: datetime, limit: int = 200
    ) -> List[Booking]:
        """CONFIRMED bookings whose end_time lies in [ended_after, ended_before) with no session row."""
        has_session = exists().where(BookingSession.booking_id == Booking.id)
        query = (
            self._build_query()
            .filter(Booking.status == BookingStatus.CONFIRMED.value)
            .filter(Booking.end_time >= ensure_utc(ended_after))
            .filter(Booking.end_time < ensure_utc(ended_before))
            .filter(~has_session)
            .order_by(Booking.end_time.asc(), Booking.id.asc())
            .limit(limit)
        )
        return self._execute_query(query)
