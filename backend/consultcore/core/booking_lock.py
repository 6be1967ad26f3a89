from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Iterator, Optional

from redis import Redis

from consultcore.core.config import settings
from consultcore.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()

# Used only when Redis is unreachable so a single worker still never overlaps sweeps.
_LOCAL_SWEEP_LOCK = threading.Lock()

SWEEP_LOCK_KEY = "lifecycle:sweep"
_POLL_INTERVAL_S = 0.1


def _lock_key(booking_id: str) -> str:
    return f"booking:{booking_id}:mutex"


def _namespaced_key(key: str) -> str:
    return f"{settings.lock_namespace}:lock:{key}"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=2,
                socket_connect_timeout=2,
            )
            client.ping()
        except Exception as exc:
            logger.warning("booking_lock_sync_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def _try_set(client: Redis, key: str, ttl_s: int) -> bool:
    return bool(client.set(_namespaced_key(key), str(time.time()), nx=True, ex=ttl_s))


def acquire_booking_lock_sync(
    booking_id: str, ttl_s: Optional[int] = None, wait_s: Optional[float] = None
) -> bool:
    """
    Acquire the per-booking mutex, polling for up to ``wait_s`` seconds.

    Returns True when Redis is unavailable: the status compare-and-swap in the
    repository keeps transitions single-winner without the lock.
    """
    ttl = ttl_s if ttl_s is not None else settings.booking_lock_ttl_seconds
    wait = wait_s if wait_s is not None else settings.booking_lock_wait_seconds
    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_booking_lock("acquire", "redis_unavailable")
        logger.warning(
            "booking_lock_sync_redis_unavailable",
            extra={"booking_id": booking_id},
        )
        return True
    deadline = time.monotonic() + max(wait, 0.0)
    try:
        while True:
            if _try_set(client, _lock_key(booking_id), ttl):
                prometheus_metrics.record_booking_lock("acquire", "success")
                return True
            if time.monotonic() >= deadline:
                prometheus_metrics.record_booking_lock("acquire", "blocked")
                return False
            time.sleep(_POLL_INTERVAL_S)
    except Exception as exc:
        prometheus_metrics.record_booking_lock("acquire", "error")
        logger.warning(
            "booking_lock_sync_failed",
            extra={
                "booking_id": booking_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return True


def release_booking_lock_sync(booking_id: str) -> None:
    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_booking_lock("release", "redis_unavailable")
        return
    try:
        deleted = client.delete(_namespaced_key(_lock_key(booking_id)))
        if deleted:
            prometheus_metrics.record_booking_lock("release", "success")
        else:
            prometheus_metrics.record_booking_lock("release", "not_found")
    except Exception as exc:
        prometheus_metrics.record_booking_lock("release", "error")
        logger.warning(
            "booking_lock_sync_release_failed",
            extra={
                "booking_id": booking_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )


@contextmanager
def booking_lock_sync(
    booking_id: str, ttl_s: Optional[int] = None, wait_s: Optional[float] = None
) -> Iterator[bool]:
    acquired = acquire_booking_lock_sync(booking_id, ttl_s=ttl_s, wait_s=wait_s)
    try:
        yield acquired
    finally:
        if acquired:
            release_booking_lock_sync(booking_id)


@contextmanager
def sweep_lock(ttl_s: Optional[int] = None) -> Iterator[bool]:
    """
    Single-flight guard for the lifecycle sweep.

    Yields False when another sweep holds the lock; the caller skips the tick.
    """
    ttl = ttl_s if ttl_s is not None else settings.sweep_lock_ttl_seconds
    client = _get_sync_redis()
    if client is None:
        acquired = _LOCAL_SWEEP_LOCK.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                _LOCAL_SWEEP_LOCK.release()
        return

    try:
        acquired = _try_set(client, SWEEP_LOCK_KEY, ttl)
    except Exception as exc:
        logger.warning("sweep_lock_acquire_failed: %s", exc)
        acquired = _LOCAL_SWEEP_LOCK.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                _LOCAL_SWEEP_LOCK.release()
        return

    try:
        yield acquired
    finally:
        if acquired:
            try:
                client.delete(_namespaced_key(SWEEP_LOCK_KEY))
            except Exception as exc:
                logger.warning("sweep_lock_release_failed: %s", exc)
