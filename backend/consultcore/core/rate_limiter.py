"""Fixed-window attempt counter backed by Redis INCR/EXPIRE."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from redis import Redis

from consultcore.core.booking_lock import _get_sync_redis
from consultcore.core.config import settings
from consultcore.core.exceptions import TooManyAttemptsException

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Count attempts per key inside a fixed window.

    When Redis is unavailable the limiter fails open and reports zero attempts.
    """

    def __init__(self, client_factory: Optional[Callable[[], Optional[Redis]]] = None) -> None:
        self._client_factory = client_factory or _get_sync_redis

    def _key(self, key: str) -> str:
        return f"{settings.lock_namespace}:rl:{key}"

    def check(self, key: str, limit: int, window_seconds: int) -> int:
        """Record one attempt and return the attempt count inside the current window."""
        client = self._client_factory()
        if client is None:
            return 0
        redis_key = self._key(key)
        try:
            count = int(client.incr(redis_key))
            if count == 1:
                client.expire(redis_key, window_seconds)
            return count
        except Exception as exc:
            logger.warning(
                "rate_limiter_check_failed",
                extra={"key": key, "error": str(exc), "error_type": type(exc).__name__},
            )
            return 0

    def enforce(self, key: str, limit: int, window_seconds: int) -> int:
        count = self.check(key, limit, window_seconds)
        if count > limit:
            logger.info(
                "rate_limit_exceeded",
                extra={"key": key, "attempts": count, "limit": limit},
            )
            raise TooManyAttemptsException(
                "Too many attempts, please wait before retrying",
                retry_after_seconds=self._retry_after(key, window_seconds),
            )
        return count

    def reset(self, key: str) -> None:
        client = self._client_factory()
        if client is None:
            return
        try:
            client.delete(self._key(key))
        except Exception as exc:
            logger.warning("rate_limiter_reset_failed: %s", exc)

    def _retry_after(self, key: str, window_seconds: int) -> int:
        client = self._client_factory()
        if client is None:
            return window_seconds
        try:
            ttl = int(client.ttl(self._key(key)))
        except Exception:
            return window_seconds
        return ttl if ttl > 0 else window_seconds
