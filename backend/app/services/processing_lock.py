# backend/app/services/processing_lock.py

"""
Short-lived Redis locks that serialize bulk job bookkeeping across API
processes and workers (retry creation, history cleanup).

Prometheus metrics:
 - processing_lock_acquire_total{result=acquired|contended|error}
 - processing_lock_release_total{result=ok|error}
 - processing_lock_latency_seconds{operation=acquire|release}

Redis being down does not block the caller: the lock fails open and the
database constraints remain the last line of defence.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import redis
from prometheus_client import Counter, Histogram
from redis.exceptions import LockError, RedisError

from backend.app.config import settings
from backend.app.services.bulk_errors import LockNotAcquired

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


# ---------------------------------------------------------
# PROMETHEUS METRICS
# ---------------------------------------------------------
PROCESSING_LOCK_ACQUIRE_TOTAL = Counter(
    "processing_lock_acquire_total",
    "Processing lock acquisition attempts",
    ["result"]  # acquired | contended | error
)

PROCESSING_LOCK_RELEASE_TOTAL = Counter(
    "processing_lock_release_total",
    "Processing lock releases",
    ["result"]  # ok | error
)

PROCESSING_LOCK_LATENCY = Histogram(
    "processing_lock_latency_seconds",
    "Latency of lock operations",
    ["operation"]  # acquire | release
)


# ---------------------------------------------------------
# REDIS CLIENT
# ---------------------------------------------------------
def _get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=2, socket_timeout=2)
    return _redis_client


def lock_key(resource: str) -> str:
    return f"lock:{resource}"


# ---------------------------------------------------------
# LOCK
# ---------------------------------------------------------
@contextmanager
def distributed_lock(resource: str, ttl: float = 5.0, blocking_timeout: float = 2.0) -> Iterator[bool]:
    """
    Hold ``lock:{resource}`` for the duration of the block.

    Yields True when the lock is held, False when Redis was unreachable and
    the block runs unlocked. Raises LockNotAcquired when another holder keeps
    the lock past ``blocking_timeout``.
    """
    lock = _get_redis().lock(lock_key(resource), timeout=ttl, blocking_timeout=blocking_timeout)

    with PROCESSING_LOCK_LATENCY.labels(operation="acquire").time():
        try:
            acquired = lock.acquire()
        except RedisError as e:
            logger.warning("distributed_lock %s redis error: %s", resource, e)
            PROCESSING_LOCK_ACQUIRE_TOTAL.labels(result="error").inc()
            acquired = None

    if acquired is None:
        # fail-open
        yield False
        return

    if not acquired:
        PROCESSING_LOCK_ACQUIRE_TOTAL.labels(result="contended").inc()
        raise LockNotAcquired(f"{resource} is locked by another operation")

    PROCESSING_LOCK_ACQUIRE_TOTAL.labels(result="acquired").inc()
    try:
        yield True
    finally:
        with PROCESSING_LOCK_LATENCY.labels(operation="release").time():
            try:
                lock.release()
                PROCESSING_LOCK_RELEASE_TOTAL.labels(result="ok").inc()
            except (LockError, RedisError) as e:
                # expired or redis gone; the ttl cleans up either way
                PROCESSING_LOCK_RELEASE_TOTAL.labels(result="error").inc()
                logger.warning("distributed_lock %s release failed: %s", resource, e)
