"""
In-process reservation lock built on asyncio.Lock.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from studyhall.core.exceptions import LockUnavailableError
from studyhall.services.interfaces.reservation_lock import ReservationLock


class LocalReservationLock(ReservationLock):
    """
    One asyncio.Lock per key, dropped once nobody holds or waits for it.

    Use when:
    - A single API process serves bookings
    - Tests and local development
    """

    def __init__(self, blocking_timeout: Optional[float] = None):
        self.blocking_timeout = blocking_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.blocking_timeout)
            except asyncio.TimeoutError:
                raise LockUnavailableError(key)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
