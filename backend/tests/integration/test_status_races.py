"""
Interleavings that the per-booking lock normally prevents.

Redis is absent in tests, so the lock fails open and only the status
compare-and-swap stands between two writers. Each test uses a file-backed
SQLite database so the two services really hold separate connections.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from consultcore.core.exceptions import GatewayException, StateConflictException
from consultcore.database import Base
from consultcore.models.booking import Booking, BookingStatus
from consultcore.models.payment import Transaction, TransactionKind, TransactionStatus
from consultcore.repositories.booking_repository import BookingRepository
from consultcore.services.booking_lifecycle_service import BookingLifecycleService


@pytest.fixture
def session_factory(tmp_path):
    file_engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'races.db'}",
        connect_args={"check_same_thread": False, "timeout": 5},
    )
    Base.metadata.create_all(bind=file_engine)
    try:
        yield sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)
    finally:
        file_engine.dispose()


@pytest.fixture
def paid_booking(session_factory, now):
    with session_factory() as setup:
        booking = Booking(
            requester_id="01JREQUESTER0000000000000A",
            provider_id="01JPROV1DER00000000000000B",
            start_time=now + timedelta(hours=30),
            end_time=now + timedelta(hours=31),
            amount=Decimal("2000.00"),
            currency="INR",
            status=BookingStatus.PENDING.value,
            created_at=now - timedelta(minutes=10),
        )
        setup.add(booking)
        setup.flush()
        payment = Transaction(
            booking_id=booking.id,
            gateway="stripe",
            gateway_order_ref="pi_race",
            kind=TransactionKind.BOOKING_PAYMENT.value,
            amount=booking.amount,
            currency="INR",
            status=TransactionStatus.COMPLETED.value,
        )
        setup.add(payment)
        setup.commit()
        return booking.id, payment.id


def _interleave_after_read(service, competitor):
    """Run ``competitor`` right after ``service`` has read the booking."""
    original = service.booking_repository.get_by_id

    def read_then_compete(booking_id, for_update=False):
        booking = original(booking_id, for_update=for_update)
        competitor()
        return booking

    service.booking_repository.get_by_id = read_then_compete


def test_status_cas_has_a_single_winner(session_factory, paid_booking):
    booking_id, _ = paid_booking
    first, second = session_factory(), session_factory()
    try:
        repo_a, repo_b = BookingRepository(first), BookingRepository(second)
        assert repo_a.get_by_id(booking_id).status == "PENDING"
        assert repo_b.get_by_id(booking_id).status == "PENDING"

        assert repo_a.transition_status(booking_id, ["PENDING"], BookingStatus.CANCELLED)
        first.commit()
        assert not repo_b.transition_status(booking_id, ["PENDING"], BookingStatus.CONFIRMED)
        second.rollback()

        assert repo_b.current_status(booking_id) == "CANCELLED"
    finally:
        first.close()
        second.close()


@pytest.mark.parametrize(
    "from_statuses,to_status",
    [
        (["CANCELLED"], BookingStatus.CONFIRMED),
        (["PENDING", "COMPLETED"], BookingStatus.CANCELLED),
        (["PENDING"], BookingStatus.COMPLETED),
        ([], BookingStatus.CANCELLED),
    ],
)
def test_edges_outside_the_table_never_reach_the_database(
    session_factory, paid_booking, from_statuses, to_status
):
    booking_id, _ = paid_booking
    with session_factory() as session:
        repo = BookingRepository(session)

        with pytest.raises(ValueError, match="Illegal booking transition"):
            repo.transition_status(booking_id, from_statuses, to_status)

        assert repo.current_status(booking_id) == "PENDING"


def test_confirmation_loses_to_concurrent_cancellation(
    session_factory, paid_booking, fake_gateway, now
):
    booking_id, payment_id = paid_booking
    # a failed refund leaves the payment completed, so only the status guard can object
    fake_gateway.refund_error = GatewayException("declined", gateway="stripe")
    first, second = session_factory(), session_factory()
    try:
        canceller = BookingLifecycleService(first)
        confirmer = BookingLifecycleService(second)
        _interleave_after_read(
            confirmer,
            lambda: canceller.cancel_booking(
                booking_id, "01JREQUESTER0000000000000A", now=now
            ),
        )

        with pytest.raises(StateConflictException) as exc_info:
            confirmer.confirm_payment(booking_id, payment_id, now=now)

        assert exc_info.value.current_status == "CANCELLED"
        assert canceller.get_booking(booking_id).status == "CANCELLED"
    finally:
        first.close()
        second.close()


def test_racing_cancellations_refund_once(session_factory, paid_booking, fake_gateway, now):
    booking_id, payment_id = paid_booking
    first, second = session_factory(), session_factory()
    try:
        with first.begin():
            first.get(Booking, booking_id).status = BookingStatus.CONFIRMED.value

        requester = BookingLifecycleService(first)
        provider = BookingLifecycleService(second)
        _interleave_after_read(
            provider,
            lambda: requester.cancel_booking(booking_id, "01JREQUESTER0000000000000A", now=now),
        )

        with pytest.raises(StateConflictException):
            provider.cancel_booking(booking_id, "01JPROV1DER00000000000000B", now=now)

        assert len(fake_gateway.refunds) == 1
        refunds = (
            first.query(Transaction)
            .filter_by(booking_id=booking_id, kind=TransactionKind.REFUND.value)
            .all()
        )
        assert len(refunds) == 1
        booking = requester.get_booking(booking_id)
        assert booking.cancelled_by_id == "01JREQUESTER0000000000000A"
    finally:
        first.close()
        second.close()
