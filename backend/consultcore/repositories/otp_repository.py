"""
OTP store.

Upsert uses the dialect's native ON CONFLICT so that a re-issue replaces the
previous code atomically even when two issue requests race.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from consultcore.core.ulid_helper import generate_ulid
from consultcore.database.session_utils import get_dialect_name
from consultcore.models.otp_record import OTPRecord


class OTPRecordRepository:
    """Data access helpers for one-time codes."""

    def __init__(self, db: Session):
        self.db = db
        self._dialect = get_dialect_name(db).lower()

    def upsert(self, purpose: str, booking_id: str, code: str, expires_at: datetime) -> None:
        now = datetime.now(timezone.utc)
        values = {
            "id": generate_ulid(),
            "purpose": purpose,
            "booking_id": booking_id,
            "code": code,
            "expires_at": expires_at,
            "created_at": now,
        }
        if self._dialect == "postgresql":
            stmt = pg_insert(OTPRecord).values(**values)
        elif self._dialect == "sqlite":
            stmt = sqlite_insert(OTPRecord).values(**values)
        else:
            self._upsert_portable(values)
            return
        stmt = stmt.on_conflict_do_update(
            index_elements=["purpose", "booking_id"],
            set_={"code": code, "expires_at": expires_at, "updated_at": now},
        )
        self.db.execute(stmt)

    def _upsert_portable(self, values: dict) -> None:
        existing = self.find(values["purpose"], values["booking_id"])
        if existing is None:
            self.db.add(OTPRecord(**values))
        else:
            existing.code = values["code"]
            existing.expires_at = values["expires_at"]
        self.db.flush()

    def find(self, purpose: str, booking_id: str) -> Optional[OTPRecord]:
        return self.db.execute(
            select(OTPRecord)
            .where(OTPRecord.purpose == purpose)
            .where(OTPRecord.booking_id == booking_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def delete(self, purpose: str, booking_id: str) -> bool:
        result = self.db.execute(
            delete(OTPRecord)
            .where(OTPRecord.purpose == purpose)
            .where(OTPRecord.booking_id == booking_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
