"""
Reservation lock strategy factory.
Configures which lock implementation guards check-and-insert.
"""

from typing import Optional

from studyhall.core.config import get_settings
from studyhall.services.interfaces.local_lock import LocalReservationLock
from studyhall.services.interfaces.reservation_lock import ReservationLock
from studyhall.services.lock_service import RedisReservationLock


def get_reservation_lock_strategy() -> ReservationLock:
    """
    Build the configured lock strategy.

    Strategy selection:
    - Single instance / development: LocalReservationLock
    - Several API instances or a separate sweep worker: RedisReservationLock

    Chosen via the RESERVATION_LOCK env var ("local" or "redis").
    """
    settings = get_settings()

    if settings.RESERVATION_LOCK == "redis":
        return RedisReservationLock(
            timeout=settings.LOCK_TIMEOUT_SECONDS,
            blocking_timeout=settings.LOCK_BLOCKING_TIMEOUT_SECONDS,
        )
    return LocalReservationLock(blocking_timeout=settings.LOCK_BLOCKING_TIMEOUT_SECONDS)


# Singleton instance
_lock: Optional[ReservationLock] = None


def get_reservation_lock() -> ReservationLock:
    """Get reservation lock singleton (also used as a FastAPI dependency)."""
    global _lock
    if _lock is None:
        _lock = get_reservation_lock_strategy()
    return _lock
