import logging
import threading
from contextlib import contextmanager
from typing import Dict, List

import redis

from settings import Settings

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    pass


class LocalLocks:
    """Per-key locks for a single process.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so keys built from request data do not accumulate.
    """

    def __init__(self, blocking_timeout: float = 5):
        self.blocking_timeout = blocking_timeout
        self._locks: Dict[str, List] = {}  # key -> [lock, holders and waiters]
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=self.blocking_timeout):
                raise LockTimeout(f"Could not acquire lock {key}")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    @property
    def active_keys(self) -> int:
        return len(self._locks)


class RedisLocks:
    """Per-key locks shared by every worker pointed at the same Redis."""

    def __init__(self, client: redis.Redis, timeout: int = 10, blocking_timeout: int = 5):
        self.client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @contextmanager
    def hold(self, key: str):
        lock = self.client.lock(f"eventhorizon_lock:{key}", timeout=self.timeout, blocking_timeout=self.blocking_timeout)
        try:
            acquired = lock.acquire(blocking=True)
        except redis.exceptions.LockError as e:
            raise LockTimeout(f"Could not acquire lock {key}") from e
        if not acquired:
            raise LockTimeout(f"Could not acquire lock {key}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # expired while held
                logger.warning(f"Lock {key} expired before release")


def make_locks(settings: Settings):
    if settings.REDIS_URL:
        logger.info("🔒 Using Redis locks")
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        return RedisLocks(client, timeout=settings.LOCK_TIMEOUT, blocking_timeout=settings.LOCK_BLOCKING_TIMEOUT)
    return LocalLocks(blocking_timeout=settings.LOCK_BLOCKING_TIMEOUT)
