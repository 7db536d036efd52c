"""
Expiry sweeper: move lapsed bookings to completed and free their resources.

Both operations are single conditional UPDATE ... RETURNING statements,
so only rows this run actually transitioned are counted. Two sweeps
racing each other (or a sweep racing an operator vacate) release each
booking once.

The resource hint goes back to available only when no other holding
reservation of that resource ends today or later.
"""

from datetime import date
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.exceptions import InvalidStateError, NotFoundError
from studyhall.core.logging import get_logger
from studyhall.core.metrics import record_release
from studyhall.db.base import utcnow
from studyhall.models.reservation import Reservation, ReservationStatus
from studyhall.models.venue import Resource
from studyhall.schemas.reservation import ReleaseResult
from studyhall.services.cache_service import get_availability_cache

logger = get_logger(__name__)

RELEASABLE = (ReservationStatus.ACTIVE, ReservationStatus.CONFIRMED)


async def refresh_resource_flags(db: AsyncSession, resource_ids: Iterable[int], today: date) -> list[int]:
    """Set is_available on resources with no remaining hold. Returns the ids flipped."""
    resource_ids = set(resource_ids)
    if not resource_ids:
        return []

    result = await db.execute(
        select(Reservation.resource_id)
        .where(
            Reservation.resource_id.in_(resource_ids),
            Reservation.status.in_(ReservationStatus.HOLDING),
            Reservation.end_date >= today,
        )
        .distinct()
    )
    freed = sorted(resource_ids - set(result.scalars().all()))
    if freed:
        await db.execute(
            update(Resource)
            .where(Resource.id.in_(freed))
            .values(is_available=True)
            .execution_options(synchronize_session=False)
        )
    return freed


async def release_expired(db: AsyncSession, today: Optional[date] = None) -> ReleaseResult:
    """Complete every active/confirmed reservation whose end_date is before today."""
    today = today or date.today()

    result = await db.execute(
        update(Reservation)
        .where(
            Reservation.status.in_(RELEASABLE),
            Reservation.end_date < today,
        )
        .values(status=ReservationStatus.COMPLETED, updated_at=utcnow())
        .returning(Reservation.id, Reservation.resource_id, Reservation.venue_id)
        .execution_options(synchronize_session=False)
    )
    released = result.all()
    if not released:
        await db.rollback()
        logger.info("expiry_sweep_completed", released=0, today=str(today))
        return ReleaseResult(released_count=0, reservation_ids=[])

    freed = await refresh_resource_flags(db, (row.resource_id for row in released), today)
    await db.commit()

    reservation_ids = sorted(row.id for row in released)
    record_release("expired", len(reservation_ids))
    logger.info(
        "expiry_sweep_completed",
        released=len(reservation_ids),
        resources_freed=len(freed),
        today=str(today),
    )
    await get_availability_cache().invalidate_venues(row.venue_id for row in released)
    return ReleaseResult(released_count=len(reservation_ids), reservation_ids=reservation_ids)


async def vacate(
    db: AsyncSession,
    reservation_id: int,
    reason: str,
    today: Optional[date] = None,
) -> Reservation:
    """Operator early release of an active/confirmed booking."""
    today = today or date.today()
    now = utcnow()

    result = await db.execute(
        update(Reservation)
        .where(
            Reservation.id == reservation_id,
            Reservation.status.in_(RELEASABLE),
        )
        .values(
            status=ReservationStatus.COMPLETED,
            vacated_at=now,
            vacate_reason=reason,
            updated_at=now,
        )
        .returning(Reservation.resource_id, Reservation.venue_id)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is None:
        reservation = await db.get(Reservation, reservation_id, populate_existing=True)
        current_status = reservation.status if reservation is not None else None
        await db.rollback()
        if current_status is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        raise InvalidStateError(
            f"Only active or confirmed bookings can be vacated; reservation {reservation_id} is {current_status}",
            context={"reservation_id": reservation_id, "status": current_status},
        )

    await refresh_resource_flags(db, [row.resource_id], today)
    await db.commit()

    record_release("vacated")
    logger.info("reservation_vacated", reservation_id=reservation_id, resource_id=row.resource_id, reason=reason)
    await get_availability_cache().invalidate_venue(row.venue_id)
    return await db.get(Reservation, reservation_id, populate_existing=True)
