# backend/consultcore/api/dependencies/__init__.py
"""
Central export point for all dependencies.
"""

from .auth import get_current_actor, require_cron_secret
from .database import get_db
from .services import get_lifecycle_service, get_lifecycle_sweeper, get_payment_service

__all__ = [
    # Auth
    "get_current_actor",
    "require_cron_secret",
    # Database
    "get_db",
    # Services
    "get_lifecycle_service",
    "get_lifecycle_sweeper",
    "get_payment_service",
]
