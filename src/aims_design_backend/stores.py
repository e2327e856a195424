"""
Shared key-value stores for distributed locking and task status.

Two backends implement the same interfaces:

- Redis (``redis`` package): the shared store used when several server
  instances run side by side. Lock creation is a single ``SET NX PX`` call.
- Memory: a process-local dictionary with expiry timestamps, used in
  single-instance mode when no Redis URL is configured.

Every backend failure is surfaced as ``StoreUnavailableError`` so callers
can tell "the store did not answer" apart from "the lock is held".
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from .models import TaskRecord

logger = logging.getLogger(__name__)


class StoreUnavailableError(RuntimeError):
    """The lock or status store could not give a definitive answer."""


class LockStore(Protocol):
    def try_acquire(self, key: str, owner: str, ttl: float) -> bool: ...

    def read(self, key: str) -> Optional[str]: ...

    def remaining_ttl(self, key: str) -> Optional[float]: ...

    def release(self, key: str, owner: Optional[str] = None) -> bool: ...


class TaskStatusStore(Protocol):
    def put(self, task_id: str, record: TaskRecord, ttl: float) -> None: ...

    def get(self, task_id: str) -> Optional[TaskRecord]: ...


def _task_key(task_id: str) -> str:
    return f"task:{task_id}"


def _decode_record(task_id: str, raw: Optional[str]) -> Optional[TaskRecord]:
    if raw is None:
        return None
    try:
        return TaskRecord.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning(f"Unreadable task record for {task_id}: {exc}")
        return None


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


def create_redis_client(url: str, socket_timeout: float = 2.0) -> "redis.Redis":
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


class _RedisBacked:
    def __init__(self, client: "redis.Redis", prefix: str = "AIMS") -> None:
        self._client = client
        self._prefix = prefix

    def _name(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key


class RedisLockStore(_RedisBacked):
    """
    Fingerprint locks shared by every service instance.

    Thread Safety:
        Acquisition is a single ``SET NX PX``, and release compares the owner
        inside WATCH/MULTI, so instances never see a half-taken lock.
    """

    def try_acquire(self, key: str, owner: str, ttl: float) -> bool:
        try:
            return bool(self._client.set(self._name(key), owner, nx=True, px=int(ttl * 1000)))
        except RedisError as exc:
            raise StoreUnavailableError(f"Lock store unavailable: {exc}") from exc

    def read(self, key: str) -> Optional[str]:
        try:
            return self._client.get(self._name(key))
        except RedisError as exc:
            raise StoreUnavailableError(f"Lock store unavailable: {exc}") from exc

    def remaining_ttl(self, key: str) -> Optional[float]:
        try:
            millis = self._client.pttl(self._name(key))
        except RedisError as exc:
            raise StoreUnavailableError(f"Lock store unavailable: {exc}") from exc
        # -2: missing, -1: no expiry
        if millis is None or millis < 0:
            return None
        return millis / 1000.0

    def release(self, key: str, owner: Optional[str] = None) -> bool:
        name = self._name(key)
        try:
            if owner is None:
                return bool(self._client.delete(name))
            with self._client.pipeline() as pipe:
                pipe.watch(name)
                if pipe.get(name) != owner:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(name)
                pipe.execute()
                return True
        except WatchError:
            # Someone re-acquired between GET and DEL; their lock stays
            return False
        except RedisError as exc:
            raise StoreUnavailableError(f"Lock store unavailable: {exc}") from exc


class RedisTaskStatusStore(_RedisBacked):
    """Task records stored as JSON strings; every put resets the expiry."""

    def put(self, task_id: str, record: TaskRecord, ttl: float) -> None:
        try:
            self._client.set(self._name(_task_key(task_id)), record.model_dump_json(), px=int(ttl * 1000))
        except RedisError as exc:
            raise StoreUnavailableError(f"Status store unavailable: {exc}") from exc

    def get(self, task_id: str) -> Optional[TaskRecord]:
        try:
            raw = self._client.get(self._name(_task_key(task_id)))
        except RedisError as exc:
            raise StoreUnavailableError(f"Status store unavailable: {exc}") from exc
        return _decode_record(task_id, raw)


# ---------------------------------------------------------------------------
# Memory backend
# ---------------------------------------------------------------------------


class MemoryKeyValue:
    """
    Thread-safe dictionary with per-key expiry.

    Expired entries are dropped lazily on access. ``clock`` is injectable so
    TTL behaviour can be exercised without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def set(self, key: str, value: str, ttl: float, only_if_absent: bool = False) -> bool:
        with self._lock:
            if only_if_absent and self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._live(key)
            return entry[1] - self._clock() if entry else None

    def delete(self, key: str, expected: Optional[str] = None) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or (expected is not None and entry[0] != expected):
                return False
            del self._data[key]
            return True


class MemoryLockStore:
    def __init__(self, backend: Optional[MemoryKeyValue] = None) -> None:
        self._backend = backend or MemoryKeyValue()

    def try_acquire(self, key: str, owner: str, ttl: float) -> bool:
        return self._backend.set(key, owner, ttl, only_if_absent=True)

    def read(self, key: str) -> Optional[str]:
        return self._backend.get(key)

    def remaining_ttl(self, key: str) -> Optional[float]:
        return self._backend.ttl(key)

    def release(self, key: str, owner: Optional[str] = None) -> bool:
        return self._backend.delete(key, expected=owner)


class MemoryTaskStatusStore:
    def __init__(self, backend: Optional[MemoryKeyValue] = None) -> None:
        self._backend = backend or MemoryKeyValue()

    def put(self, task_id: str, record: TaskRecord, ttl: float) -> None:
        self._backend.set(_task_key(task_id), record.model_dump_json(), ttl)

    def get(self, task_id: str) -> Optional[TaskRecord]:
        return _decode_record(task_id, self._backend.get(_task_key(task_id)))
