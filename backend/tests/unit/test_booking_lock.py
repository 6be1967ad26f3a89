import pytest

from consultcore.core import booking_lock
from consultcore.core.booking_lock import (
    acquire_booking_lock_sync,
    booking_lock_sync,
    release_booking_lock_sync,
    sweep_lock,
)


@pytest.fixture
def redis_client(monkeypatch, fake_redis):
    monkeypatch.setattr(booking_lock, "_get_sync_redis", lambda: fake_redis)
    return fake_redis


class TestBookingLockWithRedis:
    def test_second_holder_is_refused(self, redis_client):
        with booking_lock_sync("B1", wait_s=0) as first:
            assert first is True
            with booking_lock_sync("B1", wait_s=0) as second:
                assert second is False

    def test_lock_is_released_on_exit(self, redis_client):
        with booking_lock_sync("B1", wait_s=0):
            assert redis_client.store
        assert redis_client.store == {}

    def test_locks_are_per_booking(self, redis_client):
        with booking_lock_sync("B1", wait_s=0) as first:
            with booking_lock_sync("B2", wait_s=0) as other:
                assert first and other

    def test_ttl_is_applied(self, redis_client):
        assert acquire_booking_lock_sync("B1", ttl_s=42, wait_s=0)
        assert list(redis_client.ttls.values()) == [42]
        release_booking_lock_sync("B1")
        assert redis_client.store == {}

    def test_redis_errors_fail_open(self, monkeypatch, redis_client):
        def _boom(*args, **kwargs):
            raise ConnectionError("redis went away")

        monkeypatch.setattr(redis_client, "set", _boom)
        assert acquire_booking_lock_sync("B1", wait_s=0) is True


def test_booking_lock_fails_open_without_redis():
    with booking_lock_sync("B1", wait_s=0) as first:
        with booking_lock_sync("B1", wait_s=0) as second:
            assert first is True
            assert second is True


class TestSweepLock:
    def test_single_flight_with_redis(self, redis_client):
        with sweep_lock() as first:
            with sweep_lock() as second:
                assert first is True
                assert second is False
        with sweep_lock() as again:
            assert again is True

    def test_single_flight_without_redis(self):
        with sweep_lock() as first:
            with sweep_lock() as second:
                assert first is True
                assert second is False
        with sweep_lock() as again:
            assert again is True
