"""One-time code storage keyed by (purpose, booking)."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from consultcore.database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class OTPPurpose(str, Enum):
    SESSION_COMPLETION = "session_completion"


class OTPRecord(Base):
    """At most one live code per purpose and booking; re-issue overwrites."""

    __tablename__ = "otp_records"

    __table_args__ = (
        sa.UniqueConstraint("purpose", "booking_id", name="uq_otp_records_purpose_booking"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    purpose: Mapped[str] = mapped_column(String(40), nullable=False)
    booking_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now_utc
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, onupdate=_now_utc
    )

    def __repr__(self) -> str:
        # never render the code itself
        return f"<OTPRecord(purpose={self.purpose}, booking_id={self.booking_id})>"
