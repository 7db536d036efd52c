"""
Distributed reservation lock for multi-instance deployments.
Implements ReservationLock using Redis locks (SET NX PX + token release).

Circuit Breaker Pattern:
  On Redis failure, the lock "fails open" to the in-process asyncio lock.
  This keeps a Redis outage from blocking all bookings.
  The database remains authoritative: the resource row lock and, on
  PostgreSQL, the reservation exclusion constraint still reject overlaps.

  Tradeoff: During a Redis outage, two instances may both reach the
  database for the same seat; one of them loses at the row lock or the
  constraint and the caller sees a conflict instead of waiting.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis.exceptions import LockError, RedisError

from studyhall.core.exceptions import LockUnavailableError
from studyhall.core.logging import get_logger
from studyhall.core.metrics import lock_fallbacks, redis_circuit_breaker_open
from studyhall.infrastructure.redis_client import get_redis
from studyhall.services.interfaces.local_lock import LocalReservationLock
from studyhall.services.interfaces.reservation_lock import ReservationLock

logger = get_logger(__name__)


class RedisReservationLock(ReservationLock):
    """
    Redis-based reservation lock.

    Use when:
    - More than one API instance books the same venues
    - Background sweeps run in a separate process from the API
    """

    def __init__(
        self,
        timeout: float,
        blocking_timeout: float,
        fallback: Optional[LocalReservationLock] = None,
    ):
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.fallback = fallback or LocalReservationLock(blocking_timeout=blocking_timeout)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        client = await get_redis()
        lock = None
        acquired = False

        if client is not None:
            lock = client.lock(
                f"lock:{key}",
                timeout=self.timeout,
                blocking_timeout=self.blocking_timeout,
            )
            try:
                acquired = await lock.acquire()
            except RedisError as e:
                logger.warning("redis_lock_unavailable", lock_key=key, error=str(e))
                lock = None
            else:
                if not acquired:
                    raise LockUnavailableError(key)

        if lock is None:
            # Circuit breaker: fall back to the in-process lock
            lock_fallbacks.inc()
            redis_circuit_breaker_open.set(1)
            async with self.fallback.hold(key):
                yield
            return

        redis_circuit_breaker_open.set(0)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Held longer than LOCK_TIMEOUT_SECONDS; the key already expired
                logger.warning("redis_lock_expired_before_release", lock_key=key)
            except RedisError as e:
                logger.warning("redis_lock_release_failed", lock_key=key, error=str(e))
