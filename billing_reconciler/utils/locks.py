import logging
import threading
from contextlib import contextmanager

import redis

from ..errors import SweepAlreadyRunning

logger = logging.getLogger(__name__)

_local_locks = {}
_local_guard = threading.Lock()


@contextmanager
def redis_lock(client, key: str, ttl: int = 300):
    """
    Non-blocking Redis lock; raises SweepAlreadyRunning when held elsewhere.

    Yields a keep-alive callable that resets the TTL; long jobs call it
    between units of work so the lock cannot lapse mid-run.
    """
    lock = client.lock(key, timeout=ttl)
    acquired = lock.acquire(blocking=False)
    if not acquired:
        raise SweepAlreadyRunning(f"Lock {key} is held by another worker")

    def keep_alive():
        try:
            lock.extend(ttl, replace_ttl=True)
        except redis.exceptions.LockError as e:
            logger.warning("Lock lost while held", extra={"lock_key": key})
            raise SweepAlreadyRunning(f"Lock {key} expired before the work finished") from e

    try:
        yield keep_alive
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            # TTL expired before the work finished
            logger.warning("Lock expired before release", extra={"lock_key": key})


def _noop():
    pass


@contextmanager
def local_lock(key: str):
    """Process-local equivalent of ``redis_lock`` for single-node deployments."""
    with _local_guard:
        lock = _local_locks.setdefault(key, threading.Lock())
    if not lock.acquire(blocking=False):
        raise SweepAlreadyRunning(f"Lock {key} is held in this process")
    try:
        yield _noop
    finally:
        lock.release()


def exclusive(client, key: str, ttl: int = 300):
    """Redis lock when a client is available, process-local lock otherwise."""
    if client is not None:
        return redis_lock(client, key, ttl)
    return local_lock(key)
