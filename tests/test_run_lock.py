from __future__ import annotations

from types import SimpleNamespace

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from account_lifecycle.errors import RunLockUnavailableError
from account_lifecycle.jobs import run_lock
from account_lifecycle.jobs.run_lock import InMemoryRunLock, RedisRunLock, build_run_lock


@pytest.fixture()
def redis_client():
    return fakeredis.FakeRedis()


def test_redis_lock_is_exclusive(redis_client):
    first = RedisRunLock(redis_client, ttl_seconds=60)
    second = RedisRunLock(redis_client, ttl_seconds=60)

    assert first.acquire() is True
    assert second.acquire() is False

    first.release()
    assert second.acquire() is True


def test_redis_lock_expires(redis_client):
    lock = RedisRunLock(redis_client, ttl_seconds=60, key="locks:test")

    assert lock.acquire()
    ttl = redis_client.pttl("locks:test")
    assert 0 < ttl <= 60_000


def test_release_does_not_free_a_lock_held_by_someone_else(redis_client):
    stale = RedisRunLock(redis_client, ttl_seconds=60)
    assert stale.acquire()
    # the stale holder's key expired and a new worker took over
    redis_client.delete("locks:account-reconciliation")
    fresh = RedisRunLock(redis_client, ttl_seconds=60)
    assert fresh.acquire()

    stale.release()

    assert redis_client.get("locks:account-reconciliation") is not None
    assert RedisRunLock(redis_client, ttl_seconds=60).acquire() is False


def test_release_without_acquire_is_a_no_op(redis_client):
    RedisRunLock(redis_client, ttl_seconds=60).release()


def test_in_memory_lock_is_exclusive():
    lock = InMemoryRunLock()

    assert lock.acquire() is True
    assert lock.acquire() is False
    lock.release()
    assert lock.acquire() is True


def test_extend_renews_expiry_for_the_holder(redis_client):
    lock = RedisRunLock(redis_client, ttl_seconds=60, key="locks:test")
    assert lock.acquire()
    redis_client.pexpire("locks:test", 1000)

    assert lock.extend() is True
    assert redis_client.pttl("locks:test") > 1000


def test_extend_reports_a_lost_lock(redis_client):
    stale = RedisRunLock(redis_client, ttl_seconds=60)
    assert stale.acquire()
    redis_client.delete("locks:account-reconciliation")
    assert RedisRunLock(redis_client, ttl_seconds=60).acquire()

    assert stale.extend() is False


def test_build_run_lock_defaults_to_memory():
    assert isinstance(build_run_lock("memory", "", 60), InMemoryRunLock)


def test_build_run_lock_uses_reachable_redis(monkeypatch, redis_client):
    monkeypatch.setattr(run_lock, "Redis", SimpleNamespace(from_url=lambda url: redis_client))

    assert isinstance(build_run_lock("redis", "redis://cache:6379/0", 60), RedisRunLock)


def test_build_run_lock_refuses_unreachable_redis(monkeypatch):
    class DownRedis:
        def ping(self):
            raise RedisConnectionError("connection refused")

    monkeypatch.setattr(run_lock, "Redis", SimpleNamespace(from_url=lambda url: DownRedis()))

    with pytest.raises(RunLockUnavailableError):
        build_run_lock("redis", "redis://cache:6379/0", 60)
    with pytest.raises(RunLockUnavailableError):
        build_run_lock("redis", "", 60)
