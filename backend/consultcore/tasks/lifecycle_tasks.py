# backend/consultcore/tasks/lifecycle_tasks.py
"""
Periodic lifecycle tasks.

- ``run_lifecycle_sweep``: auto-cancel, auto-complete and chat expiry
- ``reconcile_pending_payments``: polls gateways for payments whose webhook never came
- ``dispatch_lifecycle_events``: delivers outbox rows to registered handlers
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator

from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from consultcore.database import SessionLocal
from consultcore.events.handlers import process_event
from consultcore.monitoring.prometheus_metrics import prometheus_metrics
from consultcore.repositories.event_outbox_repository import EventOutboxRepository
from consultcore.services.lifecycle_sweeper import LifecycleSweeper
from consultcore.services.payment_service import PaymentService
from consultcore.tasks.celery_app import BaseTask, celery_app

logger = get_task_logger(__name__)

MAX_DELIVERY_ATTEMPTS = 5
BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]


def _next_backoff(attempt_number: int) -> int:
    """Return backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


@contextmanager
def _session_scope() -> Iterator[Session]:
    """Provide a session for a task; services commit their own work."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(base=BaseTask, name="consultcore.tasks.lifecycle_tasks.run_lifecycle_sweep")
def run_lifecycle_sweep() -> Dict[str, Any]:
    """One sweep tick. Overlapping ticks are skipped by the sweep lock."""
    with _session_scope() as session:
        report = LifecycleSweeper(session).run()
        return report.to_dict()


@celery_app.task(
    base=BaseTask, name="consultcore.tasks.lifecycle_tasks.reconcile_pending_payments"
)
def reconcile_pending_payments(limit: int = 100) -> Dict[str, int]:
    with _session_scope() as session:
        return PaymentService(session).reconcile_open_payments(limit=limit)


def deliver_pending_events(session: Session, limit: int = 200) -> Dict[str, int]:
    """
    Run handlers for due outbox rows.

    A failing handler reschedules its row with backoff; after
    ``MAX_DELIVERY_ATTEMPTS`` the row is parked as FAILED.
    """
    repo = EventOutboxRepository(session)
    results = {"sent": 0, "retried": 0, "failed": 0}
    pending = repo.fetch_pending(limit=limit)
    for event in pending:
        attempt_number = (event.attempt_count or 0) + 1
        try:
            handled = process_event(event.event_type, dict(event.payload or {}))
        except Exception as exc:
            backoff = _next_backoff(attempt_number)
            terminal = attempt_number >= MAX_DELIVERY_ATTEMPTS
            repo.mark_failed(
                event.id,
                attempt_count=attempt_number,
                backoff_seconds=backoff,
                error=str(exc),
                terminal=terminal,
            )
            if terminal:
                results["failed"] += 1
                prometheus_metrics.record_outbox_outcome(event.event_type, "failed")
                logger.exception(
                    "Outbox event %s failed permanently after %s attempts",
                    event.id,
                    attempt_number,
                )
            else:
                results["retried"] += 1
                prometheus_metrics.record_outbox_outcome(event.event_type, "retry")
                logger.warning(
                    "Retrying outbox event %s attempt=%s backoff=%ss",
                    event.id,
                    attempt_number,
                    backoff,
                )
            continue

        if not handled:
            repo.mark_failed(
                event.id,
                attempt_count=attempt_number,
                backoff_seconds=0,
                error=f"No handler registered for {event.event_type}",
                terminal=True,
            )
            results["failed"] += 1
            prometheus_metrics.record_outbox_outcome(event.event_type, "unhandled")
            continue

        repo.mark_sent(event.id, attempt_number)
        results["sent"] += 1
        prometheus_metrics.record_outbox_outcome(event.event_type, "sent")

    session.commit()
    if pending:
        logger.info("Delivered outbox batch: %s", results)
    return results


@celery_app.task(
    base=BaseTask, name="consultcore.tasks.lifecycle_tasks.dispatch_lifecycle_events"
)
def dispatch_lifecycle_events(limit: int = 200) -> Dict[str, int]:
    with _session_scope() as session:
        return deliver_pending_events(session, limit=limit)
