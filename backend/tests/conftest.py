# backend/tests/conftest.py
"""
Shared fixtures for the consultcore test suite.

Every test gets a fresh in-memory SQLite database and runs without Redis:
the booking lock fails open and the rate limiter counts nothing unless a test
hands it the ``fake_redis`` double explicitly.
"""

import os

# Settings are read at import time; pin them before anything from consultcore loads.
os.environ["CI"] = "1"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import json
import time
from typing import Any, Dict, List, Mapping, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import consultcore.models  # noqa: F401  registers every table on Base.metadata
from consultcore.core.exceptions import WebhookSignatureException
from consultcore.database import Base
from consultcore.models.booking import Booking, BookingStatus
from consultcore.models.payment import Transaction, TransactionKind, TransactionStatus
from consultcore.payments.base import (
    GatewayNotice,
    NormalizedPaymentStatus,
    PayerInfo,
    PaymentGateway,
    PaymentIntentResult,
    PaymentStatusResult,
    RefundResult,
)
from consultcore.payments.registry import register_gateway, reset_gateways

NOW = datetime(2030, 1, 15, 12, 0, tzinfo=timezone.utc)
REQUESTER_ID = "01JREQUESTER0000000000000A"
PROVIDER_ID = "01JPROV1DER00000000000000B"
OUTSIDER_ID = "01J0VTS1DER00000000000000C"


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Redis
# ============================================================================


class FakeRedis:
    """Just enough of redis-py for the lock and the rate limiter."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    def ping(self) -> bool:
        return True

    def set(self, key: str, value: Any, nx: bool = False, ex: Optional[int] = None) -> bool:
        if nx and key in self.store:
            return False
        self.store[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    def delete(self, key: str) -> int:
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    def incr(self, key: str) -> int:
        value = int(self.store.get(key, "0")) + 1
        self.store[key] = str(value)
        return value

    def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True

    def ttl(self, key: str) -> int:
        return self.ttls.get(key, -1)


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    monkeypatch.setattr("consultcore.core.booking_lock._get_sync_redis", lambda: None)
    monkeypatch.setattr("consultcore.core.rate_limiter._get_sync_redis", lambda: None)


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ============================================================================
# Gateways
# ============================================================================


class FakeGateway(PaymentGateway):
    """In-memory gateway that records every call."""

    def __init__(self, name: str = "stripe") -> None:
        super().__init__(timeout=1, max_retries=0, backoff_seconds=0, sleep=lambda _: None)
        self.name = name
        self.status = NormalizedPaymentStatus.PENDING
        self.raw_status = "pending"
        self.verify_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.created: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.verified: List[str] = []
        self.paid_amount: Optional[Decimal] = None

    def create_intent(
        self,
        booking_id: str,
        amount: Decimal,
        currency: str,
        payer: PayerInfo,
        *,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        intent_ref = f"{self.name}_intent_{len(self.created) + 1}"
        self.created.append(
            {
                "booking_id": booking_id,
                "amount": amount,
                "currency": currency,
                "payer": payer,
                "idempotency_key": idempotency_key,
                "intent_ref": intent_ref,
            }
        )
        return PaymentIntentResult(
            intent_ref=intent_ref,
            redirect_target=f"https://pay.test/{intent_ref}",
            raw_status="created",
            currency=currency,
            gateway_amount=amount,
        )

    def verify_status(self, intent_ref: str) -> PaymentStatusResult:
        self.verified.append(intent_ref)
        if self.verify_error is not None:
            raise self.verify_error
        return PaymentStatusResult(
            status=self.status, raw_status=self.raw_status, paid_amount=self.paid_amount
        )

    def refund(
        self,
        intent_ref: str,
        amount: Decimal,
        *,
        currency: str,
        idempotency_key: str,
        paid_total: Optional[Decimal] = None,
    ) -> RefundResult:
        self.refunds.append(
            {
                "intent_ref": intent_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "paid_total": paid_total,
            }
        )
        if self.refund_error is not None:
            raise self.refund_error
        return RefundResult(refund_ref=f"re_{len(self.refunds)}", raw_status="succeeded")

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayNotice:
        if headers.get("x-test-signature") != "valid":
            raise WebhookSignatureException("Bad test signature", code="INVALID_SIGNATURE")
        event = json.loads(body)
        return GatewayNotice(
            intent_ref=event.get("intent_ref"),
            event_id=event["id"],
            event_type=event.get("type", "test.event"),
            status_hint=None,
        )

    def complete(self) -> None:
        self.status = NormalizedPaymentStatus.COMPLETED
        self.raw_status = "succeeded"


@pytest.fixture
def fake_gateway():
    gateway = FakeGateway("stripe")
    register_gateway("stripe", gateway)
    try:
        yield gateway
    finally:
        reset_gateways()


# ============================================================================
# Data builders
# ============================================================================


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_booking(db):
    def _make(
        *,
        status: BookingStatus = BookingStatus.PENDING,
        start: Optional[datetime] = None,
        duration: timedelta = timedelta(hours=1),
        amount: str = "2000.00",
        currency: str = "INR",
        created_at: Optional[datetime] = None,
        requester_id: str = REQUESTER_ID,
        provider_id: str = PROVIDER_ID,
        meeting_link: Optional[str] = None,
    ) -> Booking:
        start_time = start or NOW + timedelta(hours=48)
        booking = Booking(
            requester_id=requester_id,
            provider_id=provider_id,
            start_time=start_time,
            end_time=start_time + duration,
            amount=Decimal(amount),
            currency=currency,
            status=status.value,
            meeting_link=meeting_link,
            created_at=created_at or NOW - timedelta(minutes=5),
        )
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def make_payment(db):
    def _make(
        booking: Booking,
        *,
        gateway: str = "stripe",
        status: TransactionStatus = TransactionStatus.COMPLETED,
        intent_ref: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Transaction:
        payment = Transaction(
            booking_id=booking.id,
            gateway=gateway,
            gateway_order_ref=intent_ref or f"pi_{booking.id.lower()}_{time.monotonic_ns()}",
            kind=TransactionKind.BOOKING_PAYMENT.value,
            amount=booking.amount,
            currency=booking.currency,
            status=status.value,
            created_at=created_at or NOW - timedelta(minutes=4),
        )
        db.add(payment)
        db.commit()
        return payment

    return _make
