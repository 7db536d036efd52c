"""
Availability engine: is a seat/cabin free for an inclusive date range?

Truth is always derived from reservation rows. Two ranges [s1, e1] and
[s2, e2] overlap iff s1 <= e2 and e1 >= s2, and only reservations that
hold the resource (pending, confirmed, active) count. Resource.is_available
is never consulted here.

The engine only looks for conflicts, it does not check that a resource
exists: an unknown resource id has no conflicts and is reported free.
Existence is the reservation service's job.

A failed query raises AvailabilityLookupError. It is never turned into
"available", and callers must refuse to book when they see it.
"""

from datetime import date
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.exceptions import AvailabilityLookupError
from studyhall.core.logging import get_logger
from studyhall.models.reservation import Reservation, ReservationStatus
from studyhall.models.venue import Resource
from studyhall.schemas.availability import AvailabilityResult, ConflictInfo, DateAvailability

logger = get_logger(__name__)


def overlaps(start_1: date, end_1: date, start_2: date, end_2: date) -> bool:
    """Inclusive range overlap. Adjacent ranges (one ends the day before the other starts) do not overlap."""
    return start_1 <= end_2 and end_1 >= start_2


def covers(reservation_start: date, reservation_end: date, day: date) -> bool:
    return reservation_start <= day <= reservation_end


async def find_conflicts(
    db: AsyncSession,
    resource_id: int,
    start_date: date,
    end_date: date,
    exclude_reservation_id: Optional[int] = None,
) -> list[Reservation]:
    """Holding reservations of one resource that overlap the range."""
    query = select(Reservation).where(
        Reservation.resource_id == resource_id,
        Reservation.status.in_(ReservationStatus.HOLDING),
        Reservation.start_date <= end_date,
        Reservation.end_date >= start_date,
    )
    if exclude_reservation_id is not None:
        query = query.where(Reservation.id != exclude_reservation_id)

    result = await db.execute(query.order_by(Reservation.start_date))
    return list(result.scalars().all())


async def is_range_free(
    db: AsyncSession,
    resource_id: int,
    start_date: date,
    end_date: date,
    exclude_reservation_id: Optional[int] = None,
) -> AvailabilityResult:
    try:
        conflicts = await find_conflicts(db, resource_id, start_date, end_date, exclude_reservation_id)
    except SQLAlchemyError as e:
        logger.error("availability_lookup_failed", resource_id=resource_id, error=str(e))
        raise AvailabilityLookupError()

    logger.debug(
        "availability_checked",
        resource_id=resource_id,
        start_date=str(start_date),
        end_date=str(end_date),
        conflicts=len(conflicts),
    )
    return AvailabilityResult(
        resource_id=resource_id,
        start_date=start_date,
        end_date=end_date,
        free=not conflicts,
        conflicts=[
            ConflictInfo(
                reservation_id=r.id,
                start_date=r.start_date,
                end_date=r.end_date,
                status=r.status,
                user_id=r.user_id,
            )
            for r in conflicts
        ],
    )


async def _venue_resource_ids(db: AsyncSession, venue_id: int) -> list[int]:
    result = await db.execute(
        select(Resource.id).where(Resource.venue_id == venue_id).order_by(Resource.id)
    )
    return list(result.scalars().all())


async def _holding_ranges(
    db: AsyncSession, venue_id: int, start_date: date, end_date: date
) -> list[tuple[int, date, date]]:
    result = await db.execute(
        select(Reservation.resource_id, Reservation.start_date, Reservation.end_date).where(
            Reservation.venue_id == venue_id,
            Reservation.status.in_(ReservationStatus.HOLDING),
            Reservation.start_date <= end_date,
            Reservation.end_date >= start_date,
        )
    )
    return [tuple(row) for row in result.all()]


async def get_availability_map(
    db: AsyncSession, venue_id: int, start_date: date, end_date: date
) -> dict[int, bool]:
    """resource id -> free for the whole range, for every resource of the venue."""
    try:
        resource_ids = await _venue_resource_ids(db, venue_id)
        if not resource_ids:
            return {}
        occupied = {resource_id for resource_id, _, _ in await _holding_ranges(db, venue_id, start_date, end_date)}
    except SQLAlchemyError as e:
        logger.error("availability_map_failed", venue_id=venue_id, error=str(e))
        raise AvailabilityLookupError()

    logger.info(
        "availability_map_built",
        venue_id=venue_id,
        resources=len(resource_ids),
        occupied=len(occupied),
    )
    return {resource_id: resource_id not in occupied for resource_id in resource_ids}


async def get_date_availability(
    db: AsyncSession, venue_id: int, dates: Iterable[date]
) -> dict[date, DateAvailability]:
    """
    Per-date partition of the venue's resources into available and occupied.
    Each date is evaluated on its own: it conflicts with a reservation iff
    start_date <= day <= end_date.
    """
    days = sorted(set(dates))
    if not days:
        return {}

    try:
        resource_ids = await _venue_resource_ids(db, venue_id)
        if not resource_ids:
            return {}
        # One query for the whole span, then bucket per day in memory
        ranges = await _holding_ranges(db, venue_id, days[0], days[-1])
    except SQLAlchemyError as e:
        logger.error("date_availability_failed", venue_id=venue_id, error=str(e))
        raise AvailabilityLookupError()

    availability = {}
    for day in days:
        occupied_ids = {rid for rid, start, end in ranges if covers(start, end, day)}
        availability[day] = DateAvailability(
            date=day,
            available=[rid for rid in resource_ids if rid not in occupied_ids],
            occupied=[rid for rid in resource_ids if rid in occupied_ids],
            total=len(resource_ids),
        )
    return availability
