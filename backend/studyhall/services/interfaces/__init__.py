"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .reservation_lock import ReservationLock, resource_lock_key, transaction_lock_key
from .local_lock import LocalReservationLock

__all__ = ['ReservationLock', 'LocalReservationLock', 'resource_lock_key', 'transaction_lock_key']
