from datetime import datetime, timedelta, timezone

import pytest

from consultcore.core.config import settings
from consultcore.core.timezone_utils import ensure_utc
from consultcore.events.handlers import EVENT_HANDLERS
from consultcore.models.event_outbox import EventOutbox, EventOutboxStatus
from consultcore.repositories.event_outbox_repository import EventOutboxRepository
from consultcore.tasks.beat_schedule import get_beat_schedule
from consultcore.tasks.celery_app import celery_app
from consultcore.tasks.lifecycle_tasks import (
    MAX_DELIVERY_ATTEMPTS,
    _next_backoff,
    deliver_pending_events,
)


@pytest.fixture
def outbox(db):
    return EventOutboxRepository(db)


def _enqueue(db, outbox, event_type="BookingStatusChanged", key="booking:B1:status:CONFIRMED"):
    row = outbox.enqueue(
        event_type,
        "B1",
        {"booking_id": "B1", "from_status": "PENDING", "to_status": "CONFIRMED"},
        idempotency_key=key,
    )
    db.commit()
    return row


def _reload(db, row_id):
    db.expire_all()
    return db.get(EventOutbox, row_id)


@pytest.mark.parametrize(
    "attempt,expected",
    [(0, 30), (1, 30), (2, 120), (3, 600), (4, 1800), (5, 7200), (9, 7200)],
)
def test_backoff_schedule(attempt, expected):
    assert _next_backoff(attempt) == expected


def test_enqueue_is_idempotent(db, outbox):
    first = _enqueue(db, outbox)
    second = _enqueue(db, outbox)

    assert first.id == second.id
    assert db.query(EventOutbox).count() == 1


def test_delivered_events_are_marked_sent(db, outbox):
    row = _enqueue(db, outbox)

    assert deliver_pending_events(db) == {"sent": 1, "retried": 0, "failed": 0}

    delivered = _reload(db, row.id)
    assert delivered.status == EventOutboxStatus.SENT.value
    assert delivered.attempt_count == 1
    assert deliver_pending_events(db) == {"sent": 0, "retried": 0, "failed": 0}


def test_failing_handler_is_retried_later(db, outbox, monkeypatch):
    def broken(payload):
        raise RuntimeError("notification service down")

    monkeypatch.setitem(EVENT_HANDLERS, "BookingStatusChanged", [broken])
    row = _enqueue(db, outbox)
    before = datetime.now(timezone.utc)

    assert deliver_pending_events(db) == {"sent": 0, "retried": 1, "failed": 0}

    retried = _reload(db, row.id)
    assert retried.status == EventOutboxStatus.PENDING.value
    assert retried.attempt_count == 1
    assert "notification service down" in retried.last_error
    assert ensure_utc(retried.next_attempt_at) >= before + timedelta(seconds=30)
    # not due yet
    assert deliver_pending_events(db) == {"sent": 0, "retried": 0, "failed": 0}


def test_last_attempt_parks_the_event(db, outbox, monkeypatch):
    def broken(payload):
        raise RuntimeError("still down")

    monkeypatch.setitem(EVENT_HANDLERS, "BookingStatusChanged", [broken])
    row = _enqueue(db, outbox)
    row.attempt_count = MAX_DELIVERY_ATTEMPTS - 1
    db.commit()

    assert deliver_pending_events(db) == {"sent": 0, "retried": 0, "failed": 1}

    parked = _reload(db, row.id)
    assert parked.status == EventOutboxStatus.FAILED.value
    assert parked.attempt_count == MAX_DELIVERY_ATTEMPTS


def test_event_without_handler_fails_terminally(db, outbox):
    row = _enqueue(db, outbox, event_type="SomethingNew", key="something:B1")

    assert deliver_pending_events(db) == {"sent": 0, "retried": 0, "failed": 1}

    parked = _reload(db, row.id)
    assert parked.status == EventOutboxStatus.FAILED.value
    assert "No handler registered" in parked.last_error


def test_one_bad_event_does_not_block_the_batch(db, outbox, monkeypatch):
    seen = []

    def picky(payload):
        if payload["to_status"] == "CANCELLED":
            raise RuntimeError("boom")
        seen.append(payload["to_status"])

    monkeypatch.setitem(EVENT_HANDLERS, "BookingStatusChanged", [picky])
    outbox.enqueue(
        "BookingStatusChanged",
        "B2",
        {"booking_id": "B2", "to_status": "CANCELLED"},
        idempotency_key="booking:B2:status:CANCELLED",
    )
    _enqueue(db, outbox)

    assert deliver_pending_events(db) == {"sent": 1, "retried": 1, "failed": 0}
    assert seen == ["CONFIRMED"]


class TestSchedule:
    def test_beat_entries(self):
        schedule = get_beat_schedule("production")

        assert set(schedule) == {
            "lifecycle-sweep",
            "reconcile-pending-payments",
            "dispatch-lifecycle-events",
        }
        assert schedule["lifecycle-sweep"]["schedule"] == timedelta(
            minutes=settings.sweep_interval_minutes
        )
        for entry in schedule.values():
            assert entry["task"].startswith("consultcore.tasks.lifecycle_tasks.")
            assert entry["options"]["queue"] == "lifecycle"
            assert entry["options"]["priority"] == 9

    def test_tasks_are_registered(self):
        for entry in get_beat_schedule().values():
            assert entry["task"] in celery_app.tasks
