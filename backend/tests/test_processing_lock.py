import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, LockError

from backend.app.services import processing_lock
from backend.app.services.bulk_errors import LockNotAcquired
from backend.app.services.processing_lock import distributed_lock


class FakeLock:
    def __init__(self, acquire_result=True, acquire_error=None, release_error=None):
        self.acquire_result = acquire_result
        self.acquire_error = acquire_error
        self.release_error = release_error
        self.released = False

    def acquire(self):
        if self.acquire_error:
            raise self.acquire_error
        return self.acquire_result

    def release(self):
        if self.release_error:
            raise self.release_error
        self.released = True


class FakeRedis:
    def __init__(self, lock):
        self._lock = lock
        self.names = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.names.append((name, timeout, blocking_timeout))
        return self._lock


def _install(monkeypatch, lock):
    fake = FakeRedis(lock)
    monkeypatch.setattr(processing_lock, "_get_redis", lambda: fake)
    return fake


def test_lock_is_held_and_released(monkeypatch):
    lock = FakeLock()
    fake = _install(monkeypatch, lock)

    with distributed_lock("bulk-retry:bulk-1", ttl=5, blocking_timeout=1) as held:
        assert held is True
        assert not lock.released

    assert lock.released
    assert fake.names == [("lock:bulk-retry:bulk-1", 5, 1)]


def test_contended_lock_raises(monkeypatch):
    _install(monkeypatch, FakeLock(acquire_result=False))

    with pytest.raises(LockNotAcquired):
        with distributed_lock("bulk-cleanup"):
            pytest.fail("block must not run")


def test_redis_outage_fails_open(monkeypatch):
    _install(monkeypatch, FakeLock(acquire_error=RedisConnectionError("down")))

    with distributed_lock("bulk-cleanup") as held:
        assert held is False


def test_release_errors_are_logged_not_raised(monkeypatch):
    _install(monkeypatch, FakeLock(release_error=LockError("expired")))

    with distributed_lock("bulk-cleanup") as held:
        assert held is True
