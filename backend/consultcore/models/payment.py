"""
Payment transaction model.

One row per gateway order (kind=booking_payment) and one per refund issued
against it (kind=refund). The gateway that created the order is recorded on
the row and is the only gateway ever asked about it afterwards.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
import ulid

from consultcore.database import Base

if TYPE_CHECKING:
    from consultcore.models.booking import Booking


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class TransactionStatus(str, Enum):
    CREATED = "created"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class TransactionKind(str, Enum):
    BOOKING_PAYMENT = "booking_payment"
    REFUND = "refund"


# Statuses from which a gateway notice may still move the row.
OPEN_TRANSACTION_STATUSES = (
    TransactionStatus.CREATED.value,
    TransactionStatus.PENDING.value,
)


class Transaction(Base):
    """Gateway payment or refund tied to a booking."""

    __tablename__ = "transactions"

    __table_args__ = (
        sa.UniqueConstraint(
            "gateway", "gateway_order_ref", "kind", name="uq_transactions_gateway_order_kind"
        ),
        sa.Index(
            "uq_transactions_booking_completed_payment",
            "booking_id",
            unique=True,
            sqlite_where=sa.text("kind = 'booking_payment' AND status = 'completed'"),
            postgresql_where=sa.text("kind = 'booking_payment' AND status = 'completed'"),
        ),
        sa.Index("ix_transactions_status_kind", "status", "kind"),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("bookings.id"), nullable=False, index=True
    )
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_order_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionKind.BOOKING_PAYMENT.value
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # what the gateway was asked to charge, in its settlement currency
    gateway_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    gateway_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.CREATED.value
    )
    raw_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    parent_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("transactions.id"), nullable=True
    )
    gateway_refund_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now_utc
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, onupdate=_now_utc
    )

    booking: Mapped["Booking"] = relationship("Booking", back_populates="transactions")

    def __repr__(self) -> str:
        return (
            f"<Transaction(booking_id={self.booking_id}, gateway={self.gateway}, "
            f"kind={self.kind}, status={self.status})>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "gateway": self.gateway,
            "gateway_order_ref": self.gateway_order_ref,
            "kind": self.kind,
            "amount": str(self.amount),
            "currency": self.currency,
            "gateway_amount": str(self.gateway_amount) if self.gateway_amount is not None else None,
            "gateway_currency": self.gateway_currency,
            "status": self.status,
            "gateway_refund_ref": self.gateway_refund_ref,
        }
