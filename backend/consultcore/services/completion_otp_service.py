"""
Completion one-time code gate.

The requester obtains a six-digit code and submits it to mark the session
complete. Codes live 15 minutes, are single use, and a re-issue replaces the
previous code. Nothing here commits: the lifecycle service owns the
transaction so that consuming the code and completing the booking land
together.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hmac
import re
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import ValidationException
from ..core.timezone_utils import ensure_utc, now_utc
from ..models.otp_record import OTPPurpose
from ..repositories.factory import RepositoryFactory
from .base import BaseService

OTP_PATTERN = re.compile(r"^\d{6}$")


def generate_code() -> str:
    """Uniform over 100000..999999."""
    return str(100000 + secrets.randbelow(900000))


def validate_code_format(code: object) -> str:
    if not isinstance(code, str) or not OTP_PATTERN.fullmatch(code):
        raise ValidationException(
            "Completion code must be exactly 6 digits",
            code="INVALID_OTP_FORMAT",
        )
    return code


@dataclass(frozen=True)
class IssuedOtp:
    code: str
    expires_at: datetime


class CompletionOtpService(BaseService):
    purpose = OTPPurpose.SESSION_COMPLETION.value

    def __init__(self, db: Session, ttl: Optional[timedelta] = None):
        super().__init__(db)
        self.otp_repository = RepositoryFactory.create_otp_repository(db)
        self.ttl = ttl or timedelta(minutes=settings.completion_otp_ttl_minutes)

    @BaseService.measure_operation("issue_otp")
    def issue(self, booking_id: str, *, now: Optional[datetime] = None) -> IssuedOtp:
        issued_at = ensure_utc(now) if now is not None else now_utc()
        code = generate_code()
        expires_at = issued_at + self.ttl
        self.otp_repository.upsert(self.purpose, booking_id, code, expires_at)
        self.logger.info(
            "Completion code issued",
            extra={"booking_id": booking_id, "expires_at": expires_at.isoformat()},
        )
        return IssuedOtp(code=code, expires_at=expires_at)

    @BaseService.measure_operation("verify_otp")
    def verify(self, booking_id: str, submitted: str, *, now: Optional[datetime] = None) -> bool:
        """True iff a live, unexpired code matches exactly; a match consumes it."""
        validate_code_format(submitted)
        current = ensure_utc(now) if now is not None else now_utc()
        record = self.otp_repository.find(self.purpose, booking_id)
        if record is None:
            return False
        if current > ensure_utc(record.expires_at):
            self.otp_repository.delete(self.purpose, booking_id)
            self.logger.info("Expired completion code discarded", extra={"booking_id": booking_id})
            return False
        if not hmac.compare_digest(record.code.encode(), submitted.encode()):
            return False
        self.otp_repository.delete(self.purpose, booking_id)
        return True
