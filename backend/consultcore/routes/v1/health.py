# backend/consultcore/routes/v1/health.py
"""
Health check endpoints for monitoring and load balancer checks.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import os

from fastapi import APIRouter, Response

from ... import __version__
from ...core.config import settings
from ...schemas.lifecycle import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _resolve_git_sha() -> str:
    for candidate in (os.getenv("GIT_SHA"), os.getenv("COMMIT_SHA")):
        if candidate and candidate.strip():
            return candidate.strip()
    return "unknown"


@router.get("", response_model=HealthResponse)
def health_check(response: Response) -> HealthResponse:
    """
    Health check endpoint.

    Does not touch the database or Redis; used by load balancers.
    """
    response.headers["X-Commit-Sha"] = _resolve_git_sha()
    return HealthResponse(
        status="healthy",
        service="consultcore-api",
        version=__version__,
        environment=settings.environment,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
