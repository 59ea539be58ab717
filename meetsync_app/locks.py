from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import threading
import time
from typing import Callable, Iterator, Protocol, TypeVar
from uuid import uuid4

from redis import Redis

from meetsync.errors import SyncInProgressError

from .config import AppSettings

SYNC_LOCK_PREFIX = "meetsync:sync:lock"
_RELEASE_IF_VALUE_MATCHES_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""
_T = TypeVar("_T")


def sync_lock_key(uid: str, provider: str) -> str:
    return f"{SYNC_LOCK_PREFIX}:{provider}:{uid}"


def _redis_client(settings: AppSettings) -> Redis:
    return Redis.from_url(settings.redis_url)


class KeyedLock(Protocol):
    def try_acquire(self, key: str) -> tuple[bool, int, str | None]: ...

    def release(self, key: str, token: str | None) -> bool: ...


class RedisKeyedLock:
    """``SET NX EX`` lock with compare-and-delete release, shared across processes."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        redis_client: Redis | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self._client = redis_client or _redis_client(settings)
        self.ttl_seconds = max(1, int(ttl_seconds or settings.lock_ttl_seconds))

    def try_acquire(self, key: str) -> tuple[bool, int, str | None]:
        lock_token = uuid4().hex
        acquired = bool(self._client.set(key, lock_token, nx=True, ex=self.ttl_seconds))
        if acquired:
            return True, self.ttl_seconds, lock_token

        retry_after = self._client.ttl(key)
        if retry_after is None or int(retry_after) <= 0:
            return False, self.ttl_seconds, None
        return False, int(retry_after), None

    def release(self, key: str, token: str | None) -> bool:
        if token is None:
            return False
        result = self._client.eval(_RELEASE_IF_VALUE_MATCHES_SCRIPT, 1, key, token)
        return int(result) == 1


class MemoryKeyedLock:
    """In-process equivalent of :class:`RedisKeyedLock` for single-process deployments."""

    def __init__(
        self,
        *,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = max(1, int(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._held: dict[str, tuple[str, float]] = {}

    def try_acquire(self, key: str) -> tuple[bool, int, str | None]:
        with self._lock:
            now = self._clock()
            current = self._held.get(key)
            if current is not None and current[1] > now:
                return False, max(1, int(current[1] - now)), None
            lock_token = uuid4().hex
            self._held[key] = (lock_token, now + self.ttl_seconds)
            return True, self.ttl_seconds, lock_token

    def release(self, key: str, token: str | None) -> bool:
        if token is None:
            return False
        with self._lock:
            current = self._held.get(key)
            if current is None or current[0] != token:
                return False
            del self._held[key]
            return True


@contextmanager
def hold_sync_lock(lock: KeyedLock, uid: str, provider: str) -> Iterator[str]:
    """Hold the per-account sync lock or raise ``SyncInProgressError``."""
    key = sync_lock_key(uid, provider)
    acquired, ttl_seconds, token = lock.try_acquire(key)
    if not acquired:
        raise SyncInProgressError(
            f"A sync for {provider} is already running",
            retry_after=ttl_seconds,
        )
    try:
        yield key
    finally:
        lock.release(key, token)


@dataclass
class _Flight:
    started_at: float
    done: threading.Event = field(default_factory=threading.Event)
    result: object = None
    error: BaseException | None = None


class SingleFlight:
    """Collapse concurrent calls for the same key into one execution.

    Followers wait for the leader and share its result or exception. A flight
    older than ``ttl_seconds`` is considered abandoned and a new leader runs.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = max(0.001, float(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._flights: dict[str, _Flight] = {}

    def in_flight(self, key: str) -> bool:
        with self._lock:
            flight = self._flights.get(key)
            return flight is not None and self._clock() - flight.started_at < self.ttl_seconds

    def run(self, key: str, fn: Callable[[], _T]) -> _T:
        with self._lock:
            now = self._clock()
            flight = self._flights.get(key)
            leader = flight is None or now - flight.started_at >= self.ttl_seconds
            if leader:
                flight = _Flight(started_at=now)
                self._flights[key] = flight

        if not leader:
            if not flight.done.wait(timeout=self.ttl_seconds):
                raise SyncInProgressError(f"Timed out waiting for in-flight call {key}")
            if flight.error is not None:
                raise flight.error
            return flight.result  # type: ignore[return-value]

        try:
            flight.result = fn()
            return flight.result  # type: ignore[return-value]
        except BaseException as exc:
            flight.error = exc
            raise
        finally:
            flight.done.set()
            with self._lock:
                if self._flights.get(key) is flight:
                    del self._flights[key]


def build_sync_lock(settings: AppSettings, *, redis_client: Redis | None = None) -> KeyedLock:
    return RedisKeyedLock(settings, redis_client=redis_client)


__all__ = [
    "KeyedLock",
    "MemoryKeyedLock",
    "RedisKeyedLock",
    "SYNC_LOCK_PREFIX",
    "SingleFlight",
    "build_sync_lock",
    "hold_sync_lock",
    "sync_lock_key",
]
