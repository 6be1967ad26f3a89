"""
Payment gateway capability interface.

Every provider binding turns its own status vocabulary into
``NormalizedPaymentStatus`` and raises ``GatewayException`` for anything it
does not recognise. The orchestrator never sees provider-specific strings
except as ``raw_status`` for logging.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
import logging
import time
from typing import Callable, Dict, Mapping, Optional, TypeVar

from consultcore.core.config import settings
from consultcore.core.exceptions import GatewayException
from consultcore.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

R = TypeVar("R")


class GatewayName(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    CASHFREE = "cashfree"


class NormalizedPaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PayerInfo:
    payer_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class PaymentIntentResult:
    intent_ref: str
    redirect_target: Optional[str]
    raw_status: str
    currency: str
    gateway_amount: Decimal


@dataclass(frozen=True)
class PaymentStatusResult:
    status: NormalizedPaymentStatus
    raw_status: str
    paid_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class RefundResult:
    refund_ref: str
    raw_status: str


@dataclass(frozen=True)
class GatewayNotice:
    """A verified callback, reduced to what reconciliation needs."""

    intent_ref: Optional[str]
    event_id: str
    event_type: str
    status_hint: Optional[NormalizedPaymentStatus]


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def normalize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(key).lower(): value for key, value in headers.items()}


def map_status(
    gateway: str, raw_status: Optional[str], mapping: Mapping[str, NormalizedPaymentStatus]
) -> NormalizedPaymentStatus:
    key = (raw_status or "").strip()
    if key not in mapping:
        raise GatewayException(
            f"{gateway} returned an unrecognised payment status",
            gateway=gateway,
            attempted_status=raw_status,
        )
    return mapping[key]


class PaymentGateway(ABC):
    """One binding per provider; chosen at intent creation and stored on the Transaction."""

    name: str

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.gateway_max_retries
        self.backoff_seconds = (
            backoff_seconds
            if backoff_seconds is not None
            else settings.gateway_retry_backoff_seconds
        )
        self._sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def create_intent(
        self,
        booking_id: str,
        amount: Decimal,
        currency: str,
        payer: PayerInfo,
        *,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        """Open a payment with the provider and return where to send the payer."""

    @abstractmethod
    def verify_status(self, intent_ref: str) -> PaymentStatusResult:
        """Ask the provider for the authoritative status of an intent."""

    @abstractmethod
    def refund(
        self,
        intent_ref: str,
        amount: Decimal,
        *,
        currency: str,
        idempotency_key: str,
        paid_total: Optional[Decimal] = None,
    ) -> RefundResult:
        """
        Refund ``amount`` in the booking ``currency`` against a completed intent.

        ``paid_total`` is the booking-currency amount originally paid; bindings
        that settle in another currency scale the captured amount by it.
        """

    @abstractmethod
    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayNotice:
        """Verify a callback's authenticity and extract the intent reference."""

    def is_transient(self, exc: Exception) -> bool:
        """Network-level failures that are safe to retry for idempotent calls."""
        return isinstance(exc, GatewayException) and exc.transient

    def call(self, operation: str, fn: Callable[[], R], *, retryable: bool) -> R:
        """
        Run one provider call with timing, metrics and bounded retries.

        Only calls that are read-only or carry an idempotency key may pass
        ``retryable=True``.
        """
        attempts = 1 + (self.max_retries if retryable else 0)
        for attempt in range(attempts):
            started = time.monotonic()
            try:
                result = fn()
            except Exception as exc:
                elapsed = time.monotonic() - started
                transient = self.is_transient(exc)
                prometheus_metrics.record_gateway_call(
                    self.name, operation, "transient_error" if transient else "error", elapsed
                )
                if transient and attempt < attempts - 1:
                    wait_time = self.backoff_seconds * (2**attempt)
                    self.logger.warning(
                        f"Attempt {attempt + 1}/{attempts} failed for {self.name}.{operation}: "
                        f"{exc}. Retrying in {wait_time}s..."
                    )
                    self._sleep(wait_time)
                    continue
                if isinstance(exc, GatewayException):
                    raise
                self.logger.error(
                    "Gateway call failed",
                    extra={
                        "gateway": self.name,
                        "operation": operation,
                        "error_type": type(exc).__name__,
                    },
                )
                raise GatewayException(
                    f"{self.name} {operation} failed: {exc}",
                    gateway=self.name,
                    transient=transient,
                ) from exc
            prometheus_metrics.record_gateway_call(
                self.name, operation, "success", time.monotonic() - started
            )
            return result
        raise RuntimeError("Retry loop exited without result")
