"""Single-instance guards for reconciliation runs."""

from __future__ import annotations

import logging
import secrets
from threading import Lock
from typing import Final, Protocol

from redis import Redis
from redis.exceptions import RedisError, ResponseError

from ..errors import RunLockUnavailableError

logger = logging.getLogger(__name__)


class RunLock(Protocol):
    def acquire(self) -> bool: ...

    def extend(self) -> bool: ...

    def release(self) -> None: ...


class InMemoryRunLock:
    """Process-local run lock; enough when a single worker owns the schedule."""

    def __init__(self) -> None:
        self._lock = Lock()

    def acquire(self) -> bool:
        """Return ``True`` when the lock was free and is now held."""
        return self._lock.acquire(blocking=False)

    def extend(self) -> bool:
        return self._lock.locked()

    def release(self) -> None:
        self._lock.release()


class RedisRunLock:
    """Distributed run lock stored as a Redis key with an expiry.

    The expiry bounds how long a crashed worker can block later runs. A live
    run keeps the key by calling :meth:`extend` before each account.
    """

    _RELEASE_SCRIPT: Final[str] = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    _EXTEND_SCRIPT: Final[str] = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('PEXPIRE', KEYS[1], ARGV[2])
    end
    return 0
    """

    def __init__(
        self,
        client: Redis,
        *,
        ttl_seconds: int,
        key: str = "locks:account-reconciliation"
    ) -> None:
        self._client = client
        self._ttl_ms = ttl_seconds * 1000
        self._key = key
        self._token: str | None = None
        self._release = client.register_script(self._RELEASE_SCRIPT)
        self._extend = client.register_script(self._EXTEND_SCRIPT)

    def acquire(self) -> bool:
        token = secrets.token_hex(16)
        if self._client.set(self._key, token, nx=True, px=self._ttl_ms):
            self._token = token
            return True
        return False

    def extend(self) -> bool:
        """Reset the expiry if this instance still holds the lock."""
        if self._token is None:
            return False
        try:
            return bool(self._extend(keys=[self._key], args=[self._token, self._ttl_ms]))
        except ResponseError as exc:
            if not _lua_unavailable(exc):
                raise
        if self._holds(self._token):
            return bool(self._client.pexpire(self._key, self._ttl_ms))
        return False

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        try:
            self._release(keys=[self._key], args=[token])
        except ResponseError as exc:
            if _lua_unavailable(exc):
                self._release_fallback(token)
                return
            raise

    def _holds(self, token: str) -> bool:
        current = self._client.get(self._key)
        return current is not None and current.decode("utf-8") == token

    def _release_fallback(self, token: str) -> None:
        """Fallback pure-Python release used when Lua is unavailable."""
        if self._holds(token):
            self._client.delete(self._key)


def _lua_unavailable(exc: ResponseError) -> bool:
    message = str(exc).lower()
    return "unknown command" in message and "eval" in message


def build_run_lock(backend: str, redis_url: str, ttl_seconds: int) -> InMemoryRunLock | RedisRunLock:
    """Instantiate the configured run lock backend.

    A Redis backend that is configured but unreachable raises
    ``RunLockUnavailableError``; falling back to a process-local lock would let
    several processes run at once.
    """
    if backend == "redis":
        if not redis_url:
            raise RunLockUnavailableError("RUN_LOCK_BACKEND=redis requires REDIS_URL")
        client = Redis.from_url(redis_url)
        try:
            client.ping()
        except RedisError as exc:
            logger.error("redis run lock unavailable at %s: %s", redis_url, exc)
            raise RunLockUnavailableError(f"redis run lock unavailable at {redis_url}") from exc
        logger.info("run lock configured for redis backend at %s", redis_url)
        return RedisRunLock(client, ttl_seconds=ttl_seconds)

    logger.info("run lock using in-memory backend")
    return InMemoryRunLock()
