# backend/consultcore/tasks/beat_schedule.py
"""
Celery Beat schedule configuration.
"""

from datetime import timedelta
from typing import Any, Dict

from consultcore.core.config import settings


def get_beat_schedule(environment: str = "development") -> Dict[str, Dict[str, Any]]:
    """Periodic tasks; identical across environments apart from queue priority."""
    priority = 9 if environment == "production" else 5
    return {
        "lifecycle-sweep": {
            "task": "consultcore.tasks.lifecycle_tasks.run_lifecycle_sweep",
            "schedule": timedelta(minutes=settings.sweep_interval_minutes),
            "options": {
                "queue": "lifecycle",
                "priority": priority,
                # a tick that waited longer than one interval is superseded by the next
                "expires": settings.sweep_interval_minutes * 60,
            },
        },
        "reconcile-pending-payments": {
            "task": "consultcore.tasks.lifecycle_tasks.reconcile_pending_payments",
            "schedule": timedelta(minutes=5),
            "options": {"queue": "lifecycle", "priority": priority},
        },
        "dispatch-lifecycle-events": {
            "task": "consultcore.tasks.lifecycle_tasks.dispatch_lifecycle_events",
            "schedule": timedelta(minutes=1),
            "options": {"queue": "lifecycle", "priority": priority, "expires": 60},
        },
    }


CELERYBEAT_SCHEDULE = get_beat_schedule(settings.environment)
