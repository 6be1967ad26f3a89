# backend/consultcore/services/booking_lifecycle_service.py
"""
Booking lifecycle state machine.

Every status write is a compare-and-swap through
``BookingRepository.transition_status`` executed while holding the
per-booking Redis mutex. The mutex keeps user actions, gateway callbacks and
the sweep from interleaving on one booking; the CAS keeps the outcome single
winner even when Redis is unavailable and the mutex fails open.

Cancellation follows a commit-then-refund sequence:
- Phase 1: validate, compute the refund, CAS to CANCELLED and commit
- Phase 2: call the gateway refund (no transaction held)
- Phase 3: record the refund transaction and RefundIssued event
A refund failure never reverses the cancellation.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from sqlalchemy.orm import Session

from ..core.booking_lock import booking_lock_sync
from ..core.config import settings
from ..core.enums import Capability, is_allowed, resolve_party_role
from ..core.exceptions import (
    AccessDeniedException,
    AlreadyProcessedException,
    BookingBusyException,
    DomainException,
    NotFoundException,
    RepositoryException,
    ServiceException,
    StateConflictException,
    ValidationException,
)
from ..core.rate_limiter import RateLimiter
from ..core.timezone_utils import ensure_utc, now_utc
from ..events.lifecycle_events import BookingStatusChanged, RefundIssued
from ..events.publisher import EventPublisher
from ..models.booking import Booking, BookingStatus, CancellationReason
from ..models.booking_session import BookingSession
from ..models.payment import Transaction, TransactionKind, TransactionStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..payments.base import PaymentGateway
from ..payments.registry import get_gateway
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .chat_window_service import ChatWindowService
from .completion_otp_service import CompletionOtpService, IssuedOtp, validate_code_format
from .refund_policy import decide_refund

ZERO = Decimal("0.00")


class RefundStatus:
    NONE = "none"  # nothing refundable under the policy
    NO_PAYMENT = "no_payment"  # refundable, but no completed payment exists
    REFUNDED = "refunded"
    FAILED = "failed"


@dataclass
class CancellationResult:
    booking: Booking
    refund_amount: Decimal
    refund_status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "booking": self.booking.to_dict(),
            "refund_amount": str(self.refund_amount),
            "refund_status": self.refund_status,
        }


def meeting_link_for(booking_id: str) -> str:
    return f"{settings.meeting_base_url.rstrip('/')}/consult-{booking_id}"


class BookingLifecycleService(BaseService):
    """Sole writer of Booking.status."""

    def __init__(
        self,
        db: Session,
        *,
        gateway_resolver: Callable[[str], PaymentGateway] = get_gateway,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.transaction_repository = RepositoryFactory.create_transaction_repository(db)
        self.session_repository = RepositoryFactory.create_booking_session_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))
        self.otp_service = CompletionOtpService(db)
        self.chat_service = ChatWindowService(db)
        self.rate_limiter = rate_limiter or RateLimiter()
        self._gateway_resolver = gateway_resolver

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _clock(now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else now_utc()

    @contextmanager
    def _locked(self, booking_id: str) -> Iterator[None]:
        with booking_lock_sync(booking_id) as acquired:
            if not acquired:
                raise BookingBusyException(booking_id)
            yield

    def get_booking(self, booking_id: str, *, for_update: bool = True) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id, for_update=for_update)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        return booking

    @staticmethod
    def authorize(booking: Booking, actor_id: Optional[str], capability: Capability) -> None:
        role = resolve_party_role(booking, actor_id)
        if not is_allowed(role, capability):
            raise AccessDeniedException(
                f"Actor is not allowed to {capability.value.replace('_', ' ')} on this booking",
                code="ACCESS_DENIED",
                details={"capability": capability.value},
            )

    @staticmethod
    def require_status(booking: Booking, *allowed: BookingStatus) -> None:
        if booking.status not in {status.value for status in allowed}:
            raise StateConflictException(
                f"Booking is {booking.status}; expected {' or '.join(s.value for s in allowed)}",
                current_status=booking.status,
            )

    def _transition(
        self,
        booking: Booking,
        from_statuses: Iterable[BookingStatus],
        to_status: BookingStatus,
        *,
        trigger: str,
        actor_id: Optional[str],
        changed_at: datetime,
        **fields: Any,
    ) -> str:
        """CAS the status, refresh ``booking`` and publish the change. Returns the prior status."""
        previous = booking.status
        moved = self.booking_repository.transition_status(
            booking.id, from_statuses, to_status, updated_at=changed_at, **fields
        )
        if not moved:
            current = self.booking_repository.current_status(booking.id)
            raise StateConflictException(
                f"Booking is {current}; cannot move to {to_status.value}",
                current_status=current,
            )
        self.booking_repository.refresh(booking)
        self.publisher.publish(
            BookingStatusChanged(
                booking_id=booking.id,
                from_status=previous,
                to_status=to_status.value,
                trigger=trigger,
                actor_id=actor_id,
                changed_at=changed_at,
            )
        )
        prometheus_metrics.record_transition(previous, to_status.value, trigger)
        self.logger.info(
            "Booking status changed",
            extra={
                "booking_id": booking.id,
                "from_status": previous,
                "to_status": to_status.value,
                "trigger": trigger,
                "actor_id": actor_id,
            },
        )
        return previous

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        requester_id: str,
        provider_id: str,
        start: datetime,
        end: datetime,
        amount: Decimal,
        currency: str = "INR",
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Record a consultation request as a PENDING booking awaiting payment.

        Raises:
            ValidationException: same person on both sides, start not before
                end, or a negative amount
        """
        current = self._clock(now)
        start_utc, end_utc = ensure_utc(start), ensure_utc(end)
        if not requester_id or not provider_id or requester_id == provider_id:
            raise ValidationException(
                "A booking needs a requester and a different provider", code="INVALID_PARTIES"
            )
        if start_utc >= end_utc:
            raise ValidationException(
                "Booking must start before it ends",
                code="INVALID_TIME_RANGE",
                details={"start": start_utc.isoformat(), "end": end_utc.isoformat()},
            )
        price = Decimal(amount).quantize(ZERO, rounding=ROUND_HALF_UP)
        if price < ZERO:
            raise ValidationException(
                "Booking amount cannot be negative",
                code="INVALID_AMOUNT",
                details={"amount": str(price)},
            )

        with self.transaction():
            booking = self.booking_repository.create(
                requester_id=requester_id,
                provider_id=provider_id,
                start_time=start_utc,
                end_time=end_utc,
                amount=price,
                currency=currency.upper(),
                status=BookingStatus.PENDING.value,
                created_at=current,
            )
            self.publisher.publish(
                BookingStatusChanged(
                    booking_id=booking.id,
                    from_status=None,
                    to_status=BookingStatus.PENDING.value,
                    trigger="request",
                    actor_id=requester_id,
                    changed_at=current,
                )
            )
        prometheus_metrics.record_transition("none", BookingStatus.PENDING.value, "request")
        self.logger.info(
            "Booking requested",
            extra={
                "booking_id": booking.id,
                "requester_id": requester_id,
                "provider_id": provider_id,
                "amount": str(price),
            },
        )
        return booking

    # ------------------------------------------------------------------
    # Payment confirmation
    # ------------------------------------------------------------------

    @BaseService.measure_operation("confirm_payment")
    def confirm_payment(
        self, booking_id: str, transaction_id: str, *, now: Optional[datetime] = None
    ) -> Booking:
        """
        PENDING -> CONFIRMED once a completed booking payment exists.

        Replays for a booking that is already CONFIRMED return it unchanged.
        """
        current = self._clock(now)
        with self._locked(booking_id):
            try:
                with self.transaction():
                    booking = self.get_booking(booking_id)
                    self._check_payment(booking, transaction_id)
                    if booking.status == BookingStatus.CONFIRMED.value:
                        raise AlreadyProcessedException(
                            "Payment already confirmed", code="ALREADY_CONFIRMED"
                        )
                    self.require_status(booking, BookingStatus.PENDING)
                    try:
                        self._transition(
                            booking,
                            [BookingStatus.PENDING],
                            BookingStatus.CONFIRMED,
                            trigger="payment",
                            actor_id=None,
                            changed_at=current,
                            confirmed_at=current,
                            meeting_link=booking.meeting_link or meeting_link_for(booking.id),
                        )
                    except StateConflictException as exc:
                        if exc.current_status == BookingStatus.CONFIRMED.value:
                            raise AlreadyProcessedException(
                                "Payment already confirmed", code="ALREADY_CONFIRMED"
                            ) from exc
                        raise
                    return booking
            except AlreadyProcessedException:
                self.logger.info(
                    "Duplicate payment confirmation ignored",
                    extra={"booking_id": booking_id, "transaction_id": transaction_id},
                )
                with self.transaction():
                    return self.get_booking(booking_id)

    def _check_payment(self, booking: Booking, transaction_id: str) -> Transaction:
        payment = self.transaction_repository.get_by_id(transaction_id)
        if payment is None:
            raise NotFoundException(
                f"Transaction {transaction_id} not found", code="TRANSACTION_NOT_FOUND"
            )
        if payment.booking_id != booking.id or payment.kind != TransactionKind.BOOKING_PAYMENT.value:
            raise ValidationException(
                "Transaction is not a payment for this booking",
                code="TRANSACTION_MISMATCH",
                details={"transaction_id": transaction_id},
            )
        if payment.status != TransactionStatus.COMPLETED.value:
            raise ValidationException(
                "Payment has not completed",
                code="PAYMENT_NOT_COMPLETED",
                details={"transaction_status": payment.status},
            )
        return payment

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        booking_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        """
        Cancel a PENDING or CONFIRMED booking on behalf of either party.

        Raises:
            NotFoundException: booking missing
            AccessDeniedException: actor is not a party
            StateConflictException: booking already COMPLETED or CANCELLED
        """
        current = self._clock(now)
        with self._locked(booking_id):
            # ========== PHASE 1: validate and cancel (commits) ==========
            with self.transaction():
                booking = self.get_booking(booking_id)
                self.authorize(booking, actor_id, Capability.CANCEL)
                self.require_status(booking, BookingStatus.PENDING, BookingStatus.CONFIRMED)

                decision = decide_refund(booking.amount, booking.start_utc, current)
                payment = self.transaction_repository.get_completed_payment(booking.id)
                refund_amount = decision.amount if payment is not None else ZERO

                self._transition(
                    booking,
                    [BookingStatus.PENDING, BookingStatus.CONFIRMED],
                    BookingStatus.CANCELLED,
                    trigger="user",
                    actor_id=actor_id,
                    changed_at=current,
                    cancelled_at=current,
                    cancelled_by_id=actor_id,
                    cancellation_reason=reason or CancellationReason.USER_REQUEST.value,
                    refund_amount=refund_amount,
                )
                self.logger.info(
                    "Cancellation refund decided",
                    extra={"booking_id": booking.id, **decision.to_payload()},
                )

            if not decision.is_refundable:
                return CancellationResult(booking, ZERO, RefundStatus.NONE)
            if payment is None:
                return CancellationResult(booking, ZERO, RefundStatus.NO_PAYMENT)

            # ========== PHASES 2-3: gateway refund, then record it ==========
            status = self._issue_refund(booking, payment, refund_amount)
            return CancellationResult(booking, refund_amount, status)

    def _issue_refund(self, booking: Booking, payment: Transaction, amount: Decimal) -> str:
        """Attempt the refund once; failures are recorded, never raised."""
        if self.transaction_repository.get_refund_for(payment.id) is not None:
            self.logger.warning(
                "Refund already recorded for payment", extra={"transaction_id": payment.id}
            )
            return RefundStatus.REFUNDED

        refund_ref: Optional[str] = None
        raw_status: Optional[str] = None
        error: Optional[str] = None
        try:
            gateway = self._gateway_resolver(payment.gateway)
            result = gateway.refund(
                payment.gateway_order_ref,
                amount,
                currency=booking.currency,
                idempotency_key=f"refund:{booking.id}",
                paid_total=payment.amount,
            )
            refund_ref, raw_status = result.refund_ref, result.raw_status
        except DomainException as exc:
            error = exc.message
            self.logger.error(
                "Refund failed; cancellation stands",
                extra={
                    "booking_id": booking.id,
                    "gateway": payment.gateway,
                    "amount": str(amount),
                    "error_code": exc.code,
                },
            )

        outcome = RefundStatus.FAILED if error else RefundStatus.REFUNDED
        prometheus_metrics.record_refund(payment.gateway, outcome)
        try:
            with self.transaction():
                refund_tx = self.transaction_repository.create(
                    booking_id=booking.id,
                    gateway=payment.gateway,
                    gateway_order_ref=payment.gateway_order_ref,
                    kind=TransactionKind.REFUND.value,
                    amount=amount,
                    currency=booking.currency,
                    status=(
                        TransactionStatus.FAILED.value
                        if error
                        else TransactionStatus.REFUNDED.value
                    ),
                    raw_status=raw_status,
                    parent_transaction_id=payment.id,
                    gateway_refund_ref=refund_ref,
                    failure_reason=error,
                )
                if not error:
                    self.transaction_repository.set_status_if(
                        payment.id,
                        [TransactionStatus.COMPLETED.value],
                        TransactionStatus.REFUNDED,
                    )
                self.publisher.publish(
                    RefundIssued(
                        booking_id=booking.id,
                        transaction_id=refund_tx.id,
                        gateway=payment.gateway,
                        amount=str(amount),
                        status=outcome,
                        refund_ref=refund_ref,
                        error=error,
                    )
                )
        except (ServiceException, RepositoryException):
            self.logger.exception(
                "Could not record refund outcome",
                extra={"booking_id": booking.id, "refund_status": outcome},
            )
        return outcome

    # ------------------------------------------------------------------
    # Session and completion
    # ------------------------------------------------------------------

    @BaseService.measure_operation("start_session")
    def start_session(
        self, booking_id: str, actor_id: str, *, now: Optional[datetime] = None
    ) -> BookingSession:
        """Record the session start; a second start is a re-join and changes nothing."""
        current = self._clock(now)
        with self._locked(booking_id):
            with self.transaction():
                booking = self.get_booking(booking_id)
                self.authorize(booking, actor_id, Capability.START_SESSION)
                self.require_status(booking, BookingStatus.CONFIRMED)
                session = self.session_repository.get_by_booking(booking.id)
                if session is not None:
                    self.logger.info("Session re-joined", extra={"booking_id": booking.id})
                    return session
                session = self.session_repository.create(booking_id=booking.id, started_at=current)
                self.log_operation("start_session", booking_id=booking.id, actor_id=actor_id)
                return session

    @BaseService.measure_operation("issue_completion_otp")
    def issue_completion_otp(
        self, booking_id: str, actor_id: str, *, now: Optional[datetime] = None
    ) -> IssuedOtp:
        current = self._clock(now)
        with self._locked(booking_id):
            with self.transaction():
                booking = self.get_booking(booking_id)
                self.authorize(booking, actor_id, Capability.ISSUE_COMPLETION_OTP)
                self.require_status(booking, BookingStatus.CONFIRMED)
                self.rate_limiter.enforce(
                    f"otp:issue:{booking.id}",
                    settings.completion_otp_issue_limit,
                    settings.completion_otp_rate_window_seconds,
                )
                return self.otp_service.issue(booking.id, now=current)

    @BaseService.measure_operation("complete_booking")
    def complete_booking(
        self, booking_id: str, actor_id: str, otp: str, *, now: Optional[datetime] = None
    ) -> Booking:
        """
        CONFIRMED -> COMPLETED on a valid completion code.

        The status change, session end, chat window and code consumption
        commit together. A wrong or expired code raises ``INVALID_OTP`` after
        committing, so an expired code stays deleted.
        """
        current = self._clock(now)
        with self._locked(booking_id):
            with self.transaction():
                booking = self.get_booking(booking_id)
                self.authorize(booking, actor_id, Capability.COMPLETE)
                self.require_status(booking, BookingStatus.CONFIRMED)
                validate_code_format(otp)
                self.rate_limiter.enforce(
                    f"otp:verify:{booking.id}",
                    settings.completion_otp_verify_limit,
                    settings.completion_otp_rate_window_seconds,
                )
                verified = self.otp_service.verify(booking.id, otp, now=current)
                if verified:
                    self._transition(
                        booking,
                        [BookingStatus.CONFIRMED],
                        BookingStatus.COMPLETED,
                        trigger="user",
                        actor_id=actor_id,
                        changed_at=current,
                        completed_at=current,
                    )
                    self._close_session(
                        booking, started_at=min(booking.start_utc, current), ended_at=current
                    )

            if not verified:
                raise ValidationException(
                    "Completion code is invalid or has expired", code="INVALID_OTP"
                )
            self.rate_limiter.reset(f"otp:verify:{booking.id}")
            return booking

    def _close_session(
        self, booking: Booking, *, started_at: datetime, ended_at: datetime
    ) -> BookingSession:
        session = self.session_repository.get_by_booking(booking.id)
        if session is None:
            session = self.session_repository.create(
                booking_id=booking.id, started_at=started_at, ended_at=ended_at
            )
        elif session.ended_at is None:
            session.ended_at = ended_at
            self.session_repository.flush()
        self.chat_service.open(session, ensure_utc(session.ended_at))
        return session

    # ------------------------------------------------------------------
    # Sweep transitions
    # ------------------------------------------------------------------

    @BaseService.measure_operation("auto_cancel_unpaid")
    def auto_cancel_unpaid(self, booking_id: str, *, now: Optional[datetime] = None) -> bool:
        """Cancel an unpaid PENDING booking. False when the booking moved on meanwhile."""
        current = self._clock(now)
        with self._locked(booking_id):
            with self.transaction():
                booking = self.get_booking(booking_id)
                if booking.status != BookingStatus.PENDING.value:
                    return False
                if self.transaction_repository.get_completed_payment(booking.id) is not None:
                    # paid but not yet confirmed; reconciliation will confirm it
                    return False
                try:
                    self._transition(
                        booking,
                        [BookingStatus.PENDING],
                        BookingStatus.CANCELLED,
                        trigger="sweep",
                        actor_id=None,
                        changed_at=current,
                        cancelled_at=current,
                        cancellation_reason=CancellationReason.PAYMENT_TIMEOUT.value,
                        refund_amount=ZERO,
                    )
                except StateConflictException:
                    return False
                return True

    @BaseService.measure_operation("auto_complete_ended")
    def auto_complete_ended(self, booking_id: str, *, now: Optional[datetime] = None) -> bool:
        """Complete a CONFIRMED booking whose end time passed with no session recorded."""
        current = self._clock(now)
        with self._locked(booking_id):
            with self.transaction():
                booking = self.get_booking(booking_id)
                if booking.status != BookingStatus.CONFIRMED.value or booking.end_utc >= current:
                    return False
                if self.session_repository.get_by_booking(booking.id) is not None:
                    return False
                try:
                    self._transition(
                        booking,
                        [BookingStatus.CONFIRMED],
                        BookingStatus.COMPLETED,
                        trigger="sweep",
                        actor_id=None,
                        changed_at=current,
                        completed_at=current,
                    )
                except StateConflictException:
                    return False
                self._close_session(booking, started_at=booking.start_utc, ended_at=booking.end_utc)
                return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def booking_status(self, booking_id: str, actor_id: str) -> Dict[str, Any]:
        """The booking, its latest payment status and, while PENDING, the payment deadline."""
        booking = self.get_booking(booking_id, for_update=False)
        self.authorize(booking, actor_id, Capability.VIEW_BOOKING)
        payment = self.transaction_repository.get_latest_payment(booking.id)
        deadline: Optional[datetime] = None
        if booking.status == BookingStatus.PENDING.value:
            deadline = booking.start_utc - timedelta(minutes=settings.payment_deadline_minutes)
        return {
            "booking": booking,
            "payment_status": payment.status if payment is not None else None,
            "payment_deadline": deadline,
        }

    def chat_state(
        self, booking_id: str, actor_id: str, *, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        current = self._clock(now)
        booking = self.get_booking(booking_id, for_update=False)
        self.authorize(booking, actor_id, Capability.VIEW_CHAT)
        session = self.session_repository.get_by_booking(booking.id)
        expires_at = session.chat_expires_at if session is not None else None
        return {
            "booking_id": booking.id,
            "open": self.chat_service.is_open(session, current),
            "expires_at": ensure_utc(expires_at).isoformat() if expires_at else None,
        }
