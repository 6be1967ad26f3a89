# backend/consultcore/api/dependencies/auth.py
"""
Actor identity and internal-endpoint guards.

Authentication happens upstream; the gateway forwards the authenticated user
id in ``X-User-Id``. Whether that user may act on a booking is decided by the
lifecycle service's capability table, not here.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from ...core.config import settings
from ...core.exceptions import UnauthorizedException

logger = logging.getLogger(__name__)


def get_current_actor(x_user_id: Optional[str] = Header(default=None)) -> str:
    actor_id = (x_user_id or "").strip()
    if not actor_id:
        raise UnauthorizedException(
            "Missing actor identity", code="MISSING_ACTOR"
        ).to_http_exception()
    return actor_id


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    """Bearer check for scheduler-only endpoints; disabled when no secret is configured."""
    secret = settings.cron_secret.get_secret_value()
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Internal trigger disabled", "code": "CRON_DISABLED"},
        )
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        logger.warning("Rejected internal trigger with bad credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid cron credentials", "code": "INVALID_CRON_SECRET"},
        )
