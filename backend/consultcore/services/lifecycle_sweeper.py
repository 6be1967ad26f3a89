# backend/consultcore/services/lifecycle_sweeper.py
"""
Periodic lifecycle sweep.

A tick is split in two: ``build_sweep_plan`` is a pure function over
candidate rows that decides what to do, and ``LifecycleSweeper.apply``
executes each action in its own transaction under the per-booking lock.
One failing booking never stops the rest of the tick.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import time
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from ..core.booking_lock import booking_lock_sync, sweep_lock
from ..core.config import settings
from ..core.exceptions import BookingBusyException
from ..core.timezone_utils import ensure_utc, now_utc
from ..models.booking import BookingStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .booking_lifecycle_service import BookingLifecycleService
from .chat_window_service import ChatWindowService

AUTO_CANCEL = "auto_cancel"
AUTO_COMPLETE = "auto_complete"
CLOSE_CHAT = "close_chat"


@dataclass(frozen=True)
class SweepAction:
    kind: str
    booking_id: str
    session_id: Optional[str] = None


@dataclass
class SweepPlan:
    now: datetime
    actions: List[SweepAction] = field(default_factory=list)

    def of_kind(self, kind: str) -> List[SweepAction]:
        return [action for action in self.actions if action.kind == kind]

    def __len__(self) -> int:
        return len(self.actions)


@dataclass
class SweepReport:
    started_at: datetime
    cancelled: int = 0
    completed: int = 0
    chats_closed: int = 0
    skipped: int = 0
    failed: int = 0
    lock_skipped: bool = False
    duration_seconds: float = 0.0
    failed_bookings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "cancelled": self.cancelled,
            "completed": self.completed,
            "chats_closed": self.chats_closed,
            "skipped": self.skipped,
            "failed": self.failed,
            "lock_skipped": self.lock_skipped,
            "duration_seconds": round(self.duration_seconds, 3),
            "failed_bookings": list(self.failed_bookings),
        }


def build_sweep_plan(
    now: datetime,
    stale_pending: Iterable[Any],
    ended_confirmed: Iterable[Any],
    expired_chats: Iterable[Any],
    *,
    pending_ttl: Optional[timedelta] = None,
    completion_lookback: Optional[timedelta] = None,
) -> SweepPlan:
    """
    Decide the actions for one tick.

    Cancellations are planned before completions and each booking appears at
    most once. Candidates are re-checked against ``now`` so callers may pass
    a superset.
    """
    current = ensure_utc(now)
    ttl = pending_ttl or timedelta(minutes=settings.pending_booking_ttl_minutes)
    lookback = completion_lookback or timedelta(minutes=settings.completion_lookback_minutes)
    plan = SweepPlan(now=current)
    seen: Set[str] = set()

    for booking in stale_pending:
        if booking.id in seen or booking.status != BookingStatus.PENDING.value:
            continue
        if ensure_utc(booking.created_at) < current - ttl:
            plan.actions.append(SweepAction(AUTO_CANCEL, booking.id))
            seen.add(booking.id)

    for booking in ended_confirmed:
        if booking.id in seen or booking.status != BookingStatus.CONFIRMED.value:
            continue
        end = ensure_utc(booking.end_time)
        if current - lookback <= end < current:
            plan.actions.append(SweepAction(AUTO_COMPLETE, booking.id))
            seen.add(booking.id)

    for session in expired_chats:
        if session.booking_id in seen or session.chat_expires_at is None:
            continue
        if ensure_utc(session.chat_expires_at) < current:
            plan.actions.append(SweepAction(CLOSE_CHAT, session.booking_id, session.id))
            seen.add(session.booking_id)

    return plan


class LifecycleSweeper(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        lifecycle_service: Optional[BookingLifecycleService] = None,
        batch_size: Optional[int] = None,
    ):
        super().__init__(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.session_repository = RepositoryFactory.create_booking_session_repository(db)
        self.lifecycle = lifecycle_service or BookingLifecycleService(db)
        self.chat_service = ChatWindowService(db)
        self.batch_size = batch_size or settings.sweep_batch_size

    @BaseService.measure_operation("sweep_plan")
    def plan(self, now: datetime) -> SweepPlan:
        current = ensure_utc(now)
        pending_ttl = timedelta(minutes=settings.pending_booking_ttl_minutes)
        lookback = timedelta(minutes=settings.completion_lookback_minutes)
        stale = self.booking_repository.find_stale_pending(current - pending_ttl, self.batch_size)
        ended = self.booking_repository.find_ended_without_session(
            current - lookback, current, self.batch_size
        )
        chats = self.session_repository.find_expired_chats(current, self.batch_size)
        plan = build_sweep_plan(
            current,
            stale,
            ended,
            chats,
            pending_ttl=pending_ttl,
            completion_lookback=lookback,
        )
        # release the read snapshot before taking locks
        self.db.rollback()
        return plan

    def _close_chat(self, action: SweepAction, now: datetime) -> bool:
        with booking_lock_sync(action.booking_id) as acquired:
            if not acquired:
                raise BookingBusyException(action.booking_id)
            with self.transaction():
                session = self.session_repository.get_by_id(action.session_id, for_update=True)
                if session is None:
                    return False
                return self.chat_service.close(session, now)

    def _apply_one(self, action: SweepAction, now: datetime) -> bool:
        if action.kind == AUTO_CANCEL:
            return self.lifecycle.auto_cancel_unpaid(action.booking_id, now=now)
        if action.kind == AUTO_COMPLETE:
            return self.lifecycle.auto_complete_ended(action.booking_id, now=now)
        if action.kind == CLOSE_CHAT:
            return self._close_chat(action, now)
        raise ValueError(f"Unknown sweep action: {action.kind}")

    @BaseService.measure_operation("sweep_apply")
    def apply(self, plan: SweepPlan, now: Optional[datetime] = None) -> SweepReport:
        current = ensure_utc(now) if now is not None else plan.now
        report = SweepReport(started_at=current)
        counters = {AUTO_CANCEL: "cancelled", AUTO_COMPLETE: "completed", CLOSE_CHAT: "chats_closed"}

        for action in plan.actions:
            try:
                applied = self._apply_one(action, current)
            except BookingBusyException:
                report.skipped += 1
                prometheus_metrics.record_sweep_action(action.kind, "busy")
                continue
            except Exception:
                report.failed += 1
                report.failed_bookings.append(action.booking_id)
                prometheus_metrics.record_sweep_action(action.kind, "error")
                self.logger.exception(
                    "Sweep action failed",
                    extra={"booking_id": action.booking_id, "action": action.kind},
                )
                continue
            if applied:
                setattr(report, counters[action.kind], getattr(report, counters[action.kind]) + 1)
                prometheus_metrics.record_sweep_action(action.kind, "applied")
            else:
                report.skipped += 1
                prometheus_metrics.record_sweep_action(action.kind, "skipped")
        return report

    def run(self, now: Optional[datetime] = None) -> SweepReport:
        """One tick: plan and apply, unless another sweep holds the sweep lock."""
        current = ensure_utc(now) if now is not None else now_utc()
        started = time.monotonic()
        with sweep_lock() as acquired:
            if not acquired:
                self.logger.info("Lifecycle sweep already running; tick skipped")
                return SweepReport(started_at=current, lock_skipped=True)
            report = self.apply(self.plan(current), current)

        report.duration_seconds = time.monotonic() - started
        prometheus_metrics.observe_sweep(report.duration_seconds)
        self.logger.info("Lifecycle sweep finished", extra=report.to_dict())
        return report
