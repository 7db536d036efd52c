"""
Availability endpoints. Venue maps are cached in Redis; single-resource
checks always hit the database.
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.exceptions import InvalidDateRangeError
from studyhall.core.logging import get_logger
from studyhall.db.session import get_db
from studyhall.schemas.availability import (
    AvailabilityResult,
    DateAvailabilityResponse,
    VenueAvailabilityResponse,
)
from studyhall.services.availability_service import (
    get_availability_map,
    get_date_availability,
    is_range_free,
)
from studyhall.services.cache_service import AvailabilityCache, get_availability_cache

logger = get_logger(__name__)
router = APIRouter(prefix="/availability", tags=["Availability"])


def _check_range(start_date: date, end_date: date) -> None:
    if start_date > end_date:
        raise InvalidDateRangeError(start_date, end_date)


@router.get("/resources/{resource_id}", response_model=AvailabilityResult)
async def resource_availability(
    resource_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: AsyncSession = Depends(get_db),
):
    """Is one seat/cabin free for the whole range? Lists the conflicting bookings if not."""
    _check_range(start_date, end_date)
    return await is_range_free(db, resource_id, start_date, end_date)


@router.get("/venues/{venue_id}", response_model=VenueAvailabilityResponse)
async def venue_availability(
    venue_id: int,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: AsyncSession = Depends(get_db),
    cache: AvailabilityCache = Depends(get_availability_cache),
):
    """
    Free/occupied map of every resource in the venue.
    Cached for REDIS_CACHE_TTL; invalidated whenever a booking of the venue changes.
    """
    _check_range(start_date, end_date)

    cached = await cache.get_venue_map(venue_id, start_date, end_date)
    if cached is not None:
        logger.info("venue_availability_cache_hit", venue_id=venue_id)
        return VenueAvailabilityResponse(
            venue_id=venue_id, start_date=start_date, end_date=end_date, resources=cached, cached=True
        )

    resources = await get_availability_map(db, venue_id, start_date, end_date)
    await cache.set_venue_map(venue_id, start_date, end_date, resources)
    return VenueAvailabilityResponse(
        venue_id=venue_id, start_date=start_date, end_date=end_date, resources=resources
    )


@router.get("/venues/{venue_id}/dates", response_model=DateAvailabilityResponse)
async def venue_date_availability(
    venue_id: int,
    dates: list[date] = Query(default=[]),
    db: AsyncSession = Depends(get_db),
):
    """Per-date split of the venue's resources into available and occupied."""
    availability = await get_date_availability(db, venue_id, dates)
    return DateAvailabilityResponse(venue_id=venue_id, dates=availability)
