from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from threadloop.redis_client import RedisConnection

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "lock:"
ABORT_KEY_PREFIX = "abort:"

# KEYS[1] = lock key, ARGV[1] = execution id, ARGV[2] = ttl seconds
REFRESH_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

# KEYS[1] = lock key, ARGV[1] = execution id
RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutionLock:
    thread_id: str
    execution_id: str
    ttl_s: int
    acquired_at: datetime = field(default_factory=_utcnow)
    expires_at: datetime | None = None
    abort: bool = False
    current_turn: int = 0

    def __post_init__(self) -> None:
        if self.expires_at is None:
            self.expires_at = self.acquired_at + timedelta(seconds=self.ttl_s)

    def is_expired(self, now: datetime | None = None) -> bool:
        assert self.expires_at is not None
        return (now or _utcnow()) >= self.expires_at

    def extend(self) -> None:
        self.expires_at = _utcnow() + timedelta(seconds=self.ttl_s)


class LockRegistry:
    """Process-local table of execution locks keyed by thread id."""

    def __init__(self) -> None:
        self._locks: dict[str, ExecutionLock] = {}
        self._guard = threading.Lock()

    def create_if_absent(self, thread_id: str, execution_id: str, ttl_s: int) -> ExecutionLock | None:
        with self._guard:
            existing = self._locks.get(thread_id)
            if existing is not None and not existing.is_expired():
                return None
            lock = ExecutionLock(thread_id=thread_id, execution_id=execution_id, ttl_s=ttl_s)
            self._locks[thread_id] = lock
            return lock

    def get(self, thread_id: str) -> ExecutionLock | None:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is not None and lock.is_expired():
                del self._locks[thread_id]
                return None
            return lock

    def holder(self, thread_id: str) -> str | None:
        lock = self.get(thread_id)
        return lock.execution_id if lock is not None else None

    def extend(self, thread_id: str, execution_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is None or lock.execution_id != execution_id or lock.is_expired():
                return False
            lock.extend()
            return True

    def set_abort(self, thread_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is None:
                return False
            lock.abort = True
            return True

    def is_aborted(self, thread_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(thread_id)
            return bool(lock and lock.abort)

    def clear_abort(self, thread_id: str) -> None:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is not None:
                lock.abort = False

    def update_turn(self, thread_id: str, turn: int) -> None:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is not None:
                lock.current_turn = turn

    def remove(self, thread_id: str, execution_id: str | None = None) -> ExecutionLock | None:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is None:
                return None
            if execution_id is not None and lock.execution_id != execution_id:
                return None
            del self._locks[thread_id]
            return lock


class LockManager:
    """
    Mutual exclusion for executions, one per conversation thread.

    Redis ``SET NX EX`` is the primary implementation. When Redis cannot be
    reached the registry alone provides create-if-absent semantics, which keeps
    exclusivity inside this process but not across processes.
    """

    def __init__(
        self,
        connection: RedisConnection,
        registry: LockRegistry | None = None,
        ttl_s: int | None = None,
        abort_ttl_s: int | None = None,
    ) -> None:
        self.connection = connection
        self.registry = registry or LockRegistry()
        self.ttl_s = ttl_s or connection.settings.lock_ttl_s
        self.abort_ttl_s = abort_ttl_s or connection.settings.abort_ttl_s

    def acquire(self, thread_id: str, execution_id: str) -> bool:
        key = f"{LOCK_KEY_PREFIX}{thread_id}"

        def _redis(client: Any) -> bool:
            acquired = bool(client.set(key, execution_id, nx=True, ex=self.ttl_s))
            if not acquired:
                logger.debug("Lock not acquired for thread %s - already locked", thread_id)
                return False
            if self.registry.create_if_absent(thread_id, execution_id, self.ttl_s) is None:
                # A fallback-mode execution in this process still owns the thread.
                client.eval(RELEASE_SCRIPT, 1, key, execution_id)
                logger.warning(
                    "Lock for thread %s held locally by %s; giving back Redis lock",
                    thread_id,
                    self.registry.holder(thread_id),
                )
                return False
            logger.info("Lock acquired for thread %s (execution %s)", thread_id, execution_id)
            return True

        def _local() -> bool:
            lock = self.registry.create_if_absent(thread_id, execution_id, self.ttl_s)
            if lock is None:
                logger.debug("In-memory lock exists for thread %s", thread_id)
                return False
            logger.info("In-memory lock created for thread %s (execution %s)", thread_id, execution_id)
            return True

        acquired = self.connection.with_fallback(_redis, _local, "acquire_lock")
        if acquired:
            self.clear_abort(thread_id)
        return acquired

    def release(self, thread_id: str, execution_id: str | None = None) -> None:
        key = f"{LOCK_KEY_PREFIX}{thread_id}"
        if execution_id is None:
            self.connection.best_effort(lambda client: client.delete(key), "release_lock")
        else:
            self.connection.best_effort(
                lambda client: client.eval(RELEASE_SCRIPT, 1, key, execution_id),
                "release_lock",
            )
        lock = self.registry.remove(thread_id, execution_id)
        if lock is not None:
            duration = (_utcnow() - lock.acquired_at).total_seconds()
            logger.info(
                "Released execution lock for thread %s (duration: %.1fs, turns: %s)",
                thread_id,
                duration,
                lock.current_turn,
            )

    def refresh(self, thread_id: str, execution_id: str) -> bool:
        key = f"{LOCK_KEY_PREFIX}{thread_id}"

        def _redis(client: Any) -> bool:
            if client.eval(REFRESH_SCRIPT, 1, key, execution_id, self.ttl_s):
                self.registry.extend(thread_id, execution_id)
                return True
            holder = client.get(key)
            # The key is missing when the lock was taken during an outage or
            # Redis lost its data; local ownership still counts.
            if holder is None and self.registry.extend(thread_id, execution_id):
                if client.set(key, execution_id, nx=True, ex=self.ttl_s):
                    logger.info(
                        "Re-established Redis lock for thread %s (execution %s)",
                        thread_id,
                        execution_id,
                    )
                    return True
                holder = client.get(key)
            logger.warning(
                "Lock ownership changed for thread %s (expected %s, actual %s)",
                thread_id,
                execution_id,
                holder,
            )
            return False

        def _local() -> bool:
            return self.registry.extend(thread_id, execution_id)

        return self.connection.with_fallback(_redis, _local, "refresh_lock")

    def is_held(self, thread_id: str) -> str | None:
        key = f"{LOCK_KEY_PREFIX}{thread_id}"
        return self.connection.with_fallback(
            lambda client: client.get(key),
            lambda: self.registry.holder(thread_id),
            "check_lock",
        )

    def update_turn(self, thread_id: str, turn: int) -> None:
        self.registry.update_turn(thread_id, turn)

    def request_abort(self, thread_id: str) -> None:
        key = f"{ABORT_KEY_PREFIX}{thread_id}"
        self.connection.best_effort(
            lambda client: client.set(key, "1", ex=self.abort_ttl_s), "set_abort_flag"
        )
        if self.registry.set_abort(thread_id):
            logger.warning("Abort flag set for thread %s", thread_id)

    def is_abort_requested(self, thread_id: str) -> bool:
        if self.registry.is_aborted(thread_id):
            return True
        key = f"{ABORT_KEY_PREFIX}{thread_id}"
        flag = self.connection.best_effort(lambda client: client.get(key), "check_abort_flag")
        return flag == "1"

    def clear_abort(self, thread_id: str) -> None:
        key = f"{ABORT_KEY_PREFIX}{thread_id}"
        self.connection.best_effort(lambda client: client.delete(key), "clear_abort_flag")
        self.registry.clear_abort(thread_id)
