"""
Reservation lock strategy interface.
Allows swapping between single-process and distributed mutual exclusion.
"""

from abc import ABC, abstractmethod
from typing import AsyncContextManager


def resource_lock_key(resource_id: int) -> str:
    return f"resource:{resource_id}"


def transaction_lock_key(transaction_id: int) -> str:
    return f"transaction:{transaction_id}"


class ReservationLock(ABC):
    """
    Exclusive lock keyed by an arbitrary string.

    Implementations:
    - LocalReservationLock: asyncio locks, one process
    - RedisReservationLock: Redis locks across instances, fails open to local

    Keys in use: resource:{id} around check-and-insert of reservations, and
    transaction:{id} around payment finalization. When both are needed the
    transaction lock is taken first.
    """

    @abstractmethod
    def hold(self, key: str) -> AsyncContextManager[None]:
        """
        Async context manager holding the lock for `key`.

        Raises:
            LockUnavailableError: the lock could not be acquired in time
        """
        pass
