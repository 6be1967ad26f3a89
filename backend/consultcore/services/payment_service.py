# backend/consultcore/services/payment_service.py
"""
Payment orchestration across gateways.

The gateway is picked when the intent is created and stored on the
Transaction; every later verify or refund routes by ``Transaction.gateway``.
Gateway notices (webhooks, return-page polls, the periodic poller) all end
in ``reconcile``, which asks the gateway for the authoritative status,
moves the Transaction with a conditional update and, on completion, hands
over to ``BookingLifecycleService.confirm_payment``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
import json
import time
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import Capability
from ..core.exceptions import (
    ConflictException,
    DomainException,
    NotFoundException,
    RepositoryException,
    StateConflictException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, now_utc
from ..models.booking import BookingStatus
from ..models.payment import (
    OPEN_TRANSACTION_STATUSES,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from ..payments.base import (
    NormalizedPaymentStatus,
    PayerInfo,
    PaymentGateway,
    PaymentStatusResult,
)
from ..payments.registry import get_gateway
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_lifecycle_service import BookingLifecycleService
from .webhook_ledger_service import WebhookLedgerService

TRANSACTION_STATUS_FOR: Dict[NormalizedPaymentStatus, TransactionStatus] = {
    NormalizedPaymentStatus.PENDING: TransactionStatus.PENDING,
    NormalizedPaymentStatus.COMPLETED: TransactionStatus.COMPLETED,
    NormalizedPaymentStatus.FAILED: TransactionStatus.FAILED,
    NormalizedPaymentStatus.CANCELLED: TransactionStatus.CANCELLED,
}

# Give webhooks a head start before the poller asks the gateway.
RECONCILE_GRACE = timedelta(minutes=2)
# Open payments older than this are no longer polled.
RECONCILE_HORIZON = timedelta(hours=24)

CENT = Decimal("0.01")


class PaymentService(BaseService):
    """Sole writer of Transaction.status for booking payments."""

    def __init__(
        self,
        db: Session,
        *,
        gateway_resolver: Callable[[str], PaymentGateway] = get_gateway,
        lifecycle_service: Optional[BookingLifecycleService] = None,
    ):
        super().__init__(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.transaction_repository = RepositoryFactory.create_transaction_repository(db)
        self.ledger = WebhookLedgerService(db)
        self.lifecycle = lifecycle_service or BookingLifecycleService(
            db, gateway_resolver=gateway_resolver
        )
        self._gateway_resolver = gateway_resolver

    @BaseService.measure_operation("create_payment_intent")
    def create_payment_intent(
        self,
        booking_id: str,
        actor_id: str,
        gateway_name: str,
        payer: Optional[PayerInfo] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Open a payment for a PENDING booking with the chosen gateway.

        Raises:
            ValidationException: unsupported gateway or payment deadline passed
            AccessDeniedException: actor is not the requester
            StateConflictException: booking is not PENDING
            ConflictException: the booking already has a completed payment
            GatewayException: the gateway refused or could not be reached
        """
        current = ensure_utc(now) if now is not None else now_utc()
        gateway = self._gateway_resolver(gateway_name)

        # ========== PHASE 1: validate ==========
        with self.transaction():
            booking = self.lifecycle.get_booking(booking_id)
            self.lifecycle.authorize(booking, actor_id, Capability.CREATE_PAYMENT)
            self.lifecycle.require_status(booking, BookingStatus.PENDING)
            deadline = booking.start_utc - timedelta(minutes=settings.payment_deadline_minutes)
            if current >= deadline:
                raise ValidationException(
                    "Payments close one hour before the session starts",
                    code="PAYMENT_DEADLINE_PASSED",
                    details={"deadline": deadline.isoformat()},
                )
            if self.transaction_repository.get_completed_payment(booking.id) is not None:
                raise ConflictException("Booking is already paid", code="ALREADY_PAID")
            attempt = (
                self.transaction_repository.count(
                    booking_id=booking.id, kind=TransactionKind.BOOKING_PAYMENT.value
                )
                + 1
            )
            amount, currency = booking.amount, booking.currency

        # ========== PHASE 2: gateway call (no transaction) ==========
        result = gateway.create_intent(
            booking_id,
            amount,
            currency,
            payer or PayerInfo(payer_id=actor_id),
            idempotency_key=f"pay_{booking_id}_{gateway.name}_{attempt}",
        )

        # ========== PHASE 3: record the attempt ==========
        with self.transaction():
            payment = self.transaction_repository.create(
                booking_id=booking_id,
                gateway=gateway.name,
                gateway_order_ref=result.intent_ref,
                kind=TransactionKind.BOOKING_PAYMENT.value,
                amount=amount,
                currency=currency,
                gateway_amount=result.gateway_amount,
                gateway_currency=result.currency.upper(),
                status=TransactionStatus.CREATED.value,
                raw_status=result.raw_status,
            )
        self.logger.info(
            "Payment intent created",
            extra={
                "booking_id": booking_id,
                "gateway": gateway.name,
                "intent_ref": result.intent_ref,
                "transaction_id": payment.id,
            },
        )
        return {
            "transaction_id": payment.id,
            "booking_id": booking_id,
            "gateway": gateway.name,
            "intent_ref": result.intent_ref,
            "redirect_target": result.redirect_target,
            "status": payment.status,
            "amount": str(amount),
            "currency": currency,
            "gateway_amount": str(result.gateway_amount),
            "gateway_currency": result.currency,
        }

    def _find_payment(self, gateway_name: str, intent_ref: str) -> Transaction:
        payment = self.transaction_repository.get_payment_by_gateway_ref(gateway_name, intent_ref)
        if payment is None:
            raise NotFoundException(
                f"No {gateway_name} payment for intent {intent_ref}",
                code="TRANSACTION_NOT_FOUND",
            )
        return payment

    @BaseService.measure_operation("payment_status")
    def payment_status(
        self,
        gateway_name: str,
        intent_ref: str,
        actor_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Return-page poll on behalf of a user.

        Only a party to the booking may look; the gateway is not asked
        until the actor has been checked.

        Raises:
            NotFoundException: no payment for the intent
            AccessDeniedException: actor is not a party to the booking
        """
        payment = self._find_payment(gateway_name, intent_ref)
        booking = self.lifecycle.get_booking(payment.booking_id, for_update=False)
        self.lifecycle.authorize(booking, actor_id, Capability.VIEW_PAYMENT)
        return self.reconcile(gateway_name, intent_ref, now=now)

    @staticmethod
    def amount_mismatch(payment: Transaction, status_result: PaymentStatusResult) -> Optional[str]:
        """Describe a completed charge that differs from what the gateway was asked for."""
        if status_result.paid_amount is None:
            return None
        expected = payment.gateway_amount if payment.gateway_amount is not None else payment.amount
        expected = Decimal(expected).quantize(CENT)
        paid = Decimal(status_result.paid_amount).quantize(CENT)
        if paid == expected:
            return None
        currency = payment.gateway_currency or payment.currency
        return f"Gateway reported {paid} {currency} paid; expected {expected} {currency}"

    @BaseService.measure_operation("reconcile_payment")
    def reconcile(
        self, gateway_name: str, intent_ref: str, *, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Pull the authoritative gateway status and apply it.

        A completion for a different amount than was charged is recorded as
        FAILED and never confirms the booking.
        """
        current = ensure_utc(now) if now is not None else now_utc()
        payment = self._find_payment(gateway_name, intent_ref)

        status_result = self._gateway_resolver(payment.gateway).verify_status(intent_ref)
        target = TRANSACTION_STATUS_FOR[status_result.status]
        failure_reason: Optional[str] = None
        if target == TransactionStatus.FAILED:
            failure_reason = f"Gateway reported {status_result.raw_status}"
        elif target == TransactionStatus.COMPLETED and payment.status in OPEN_TRANSACTION_STATUSES:
            failure_reason = self.amount_mismatch(payment, status_result)
            if failure_reason is not None:
                target = TransactionStatus.FAILED
                self.logger.error(
                    "Paid amount does not match the payment",
                    extra={
                        "transaction_id": payment.id,
                        "booking_id": payment.booking_id,
                        "gateway": payment.gateway,
                        "paid_amount": str(status_result.paid_amount),
                        "expected_amount": str(payment.gateway_amount or payment.amount),
                    },
                )

        if payment.status in OPEN_TRANSACTION_STATUSES and payment.status != target.value:
            fields: Dict[str, Any] = {"raw_status": status_result.raw_status, "updated_at": current}
            if failure_reason is not None:
                fields["failure_reason"] = failure_reason
            try:
                with self.transaction():
                    moved = self.transaction_repository.set_status_if(
                        payment.id, OPEN_TRANSACTION_STATUSES, target, **fields
                    )
            except RepositoryException as exc:
                # a second completed payment for the same booking trips the partial unique index
                self.logger.error(
                    "Duplicate completed payment for booking",
                    extra={"booking_id": payment.booking_id, "transaction_id": payment.id},
                )
                raise ConflictException(
                    "Booking already has a completed payment",
                    code="DUPLICATE_PAYMENT",
                    details={"transaction_id": payment.id},
                ) from exc
            if moved:
                self.logger.info(
                    "Payment status updated",
                    extra={
                        "transaction_id": payment.id,
                        "gateway": payment.gateway,
                        "status": target.value,
                        "raw_status": status_result.raw_status,
                    },
                )
            self.transaction_repository.refresh(payment)

        booking_status: Optional[str] = None
        if payment.status == TransactionStatus.COMPLETED.value:
            try:
                booking = self.lifecycle.confirm_payment(payment.booking_id, payment.id, now=current)
                booking_status = booking.status
            except StateConflictException as exc:
                # paid after the booking was cancelled; needs a manual refund
                booking_status = exc.current_status
                self.logger.error(
                    "Completed payment for a booking that cannot be confirmed",
                    extra={
                        "booking_id": payment.booking_id,
                        "transaction_id": payment.id,
                        "booking_status": exc.current_status,
                    },
                )
        else:
            booking_status = self.booking_repository.current_status(payment.booking_id)

        return {
            "transaction_id": payment.id,
            "booking_id": payment.booking_id,
            "gateway": payment.gateway,
            "intent_ref": intent_ref,
            "payment_status": payment.status,
            "booking_status": booking_status,
        }

    @BaseService.measure_operation("handle_webhook")
    def handle_webhook(
        self, gateway_name: str, body: bytes, headers: Mapping[str, str]
    ) -> Dict[str, Any]:
        """
        Verify, log and apply one gateway callback.

        The notice only says which intent to look at; ``reconcile`` decides
        what happened. Redeliveries of a processed event are acknowledged
        without touching anything.
        """
        gateway = self._gateway_resolver(gateway_name)
        notice = gateway.parse_webhook(body, headers)
        started = time.monotonic()

        try:
            payload = json.loads(body)
        except ValueError:
            payload = {"raw": body.decode("utf-8", errors="replace")}

        with self.transaction():
            event = self.ledger.log_received(
                source=gateway.name,
                event_type=notice.event_type,
                event_id=notice.event_id,
                payload=payload,
                headers=dict(headers),
            )
            if self.ledger.is_duplicate(event):
                self.logger.info(
                    "Duplicate webhook ignored",
                    extra={"gateway": gateway.name, "event_id": notice.event_id},
                )
                return {"status": "duplicate", "event_id": notice.event_id}

        if notice.intent_ref is None:
            with self.transaction():
                self.ledger.mark_processed(event, duration_ms=self.ledger.elapsed_ms(started))
            return {"status": "ignored", "event_id": notice.event_id}

        try:
            outcome = self.reconcile(gateway.name, notice.intent_ref)
        except NotFoundException as exc:
            with self.transaction():
                self.ledger.mark_failed(
                    event, error=exc.message, duration_ms=self.ledger.elapsed_ms(started)
                )
            return {"status": "ignored", "event_id": notice.event_id}
        except DomainException as exc:
            with self.transaction():
                self.ledger.mark_failed(
                    event, error=exc.message, duration_ms=self.ledger.elapsed_ms(started)
                )
            raise

        with self.transaction():
            self.ledger.mark_processed(
                event,
                related_booking_id=outcome["booking_id"],
                duration_ms=self.ledger.elapsed_ms(started),
            )
        return {"status": "processed", "event_id": notice.event_id, **outcome}

    @BaseService.measure_operation("reconcile_open_payments")
    def reconcile_open_payments(
        self, *, now: Optional[datetime] = None, limit: int = 100
    ) -> Dict[str, int]:
        """Poll gateways for payments whose webhook never arrived."""
        current = ensure_utc(now) if now is not None else now_utc()
        candidates = self.transaction_repository.find_open_payments(
            created_before=current - RECONCILE_GRACE,
            created_after=current - RECONCILE_HORIZON,
            limit=limit,
        )
        results = {"checked": 0, "completed": 0, "failed": 0, "errors": 0}
        for payment in candidates:
            results["checked"] += 1
            try:
                outcome = self.reconcile(payment.gateway, payment.gateway_order_ref, now=current)
            except DomainException as exc:
                results["errors"] += 1
                self.logger.warning(
                    "Payment reconciliation failed",
                    extra={
                        "transaction_id": payment.id,
                        "gateway": payment.gateway,
                        "error_code": exc.code,
                    },
                )
                continue
            if outcome["payment_status"] == TransactionStatus.COMPLETED.value:
                results["completed"] += 1
            elif outcome["payment_status"] in {
                TransactionStatus.FAILED.value,
                TransactionStatus.CANCELLED.value,
            }:
                results["failed"] += 1
        if results["checked"]:
            self.logger.info("Open payment reconciliation finished", extra=results)
        return results
