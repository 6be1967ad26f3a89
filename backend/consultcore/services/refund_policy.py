"""Cancellation refund policy: how much of the paid amount goes back to the requester."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from consultcore.core.exceptions import ValidationException
from consultcore.core.timezone_utils import ensure_utc, now_utc

MINOR_UNIT = Decimal("0.01")
FULL_REFUND_THRESHOLD_HOURS = 24
PARTIAL_REFUND_THRESHOLD_HOURS = 2
PARTIAL_REFUND_RATE = Decimal("0.5")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 0.1 from dragging binary noise into money math
    return Decimal(str(value))


def hours_until(start: datetime, now: Optional[datetime] = None) -> float:
    """Hours from ``now`` to ``start``; negative once the session has begun."""
    reference = ensure_utc(now) if now is not None else now_utc()
    return (ensure_utc(start) - reference).total_seconds() / 3600


def refund_rate(hours_until_start: float) -> Decimal:
    if hours_until_start > FULL_REFUND_THRESHOLD_HOURS:
        return Decimal("1")
    if hours_until_start > PARTIAL_REFUND_THRESHOLD_HOURS:
        return PARTIAL_REFUND_RATE
    return Decimal("0")


def calculate_refund(amount: Any, hours_until_start: float) -> Decimal:
    """
    Refund for a cancellation ``hours_until_start`` hours before the session.

    More than 24h: full amount. More than 2h up to 24h: half. Otherwise nothing.
    Rounded half-up to the minor currency unit.
    """
    value = to_decimal(amount)
    if value < 0:
        raise ValidationException(
            "Refund amount basis cannot be negative",
            code="NEGATIVE_AMOUNT",
            details={"amount": str(value)},
        )
    return (value * refund_rate(hours_until_start)).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RefundDecision:
    amount: Decimal
    percentage: int
    hours_until_start: float
    policy_basis: str

    @property
    def is_refundable(self) -> bool:
        return self.amount > 0

    def to_payload(self) -> dict[str, object]:
        return {
            "amount": str(self.amount),
            "percentage": self.percentage,
            "hours_until_start": round(self.hours_until_start, 4),
            "policy_basis": self.policy_basis,
        }


def decide_refund(amount: Any, start: datetime, now: Optional[datetime] = None) -> RefundDecision:
    hours = hours_until(start, now)
    rate = refund_rate(hours)
    if rate == 1:
        basis = ">24 hours before session: full refund"
    elif rate > 0:
        basis = "2-24 hours before session: 50% refund"
    else:
        basis = "<=2 hours before session: no refund"
    return RefundDecision(
        amount=calculate_refund(amount, hours),
        percentage=int(rate * 100),
        hours_until_start=hours,
        policy_basis=basis,
    )
