"""
Pydantic schemas for availability lookups.
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel


class ConflictInfo(BaseModel):
    reservation_id: int
    start_date: date
    end_date: date
    status: str
    user_id: Optional[str] = None

    model_config = {"from_attributes": True}


class AvailabilityResult(BaseModel):
    resource_id: int
    start_date: date
    end_date: date
    free: bool
    conflicts: list[ConflictInfo] = []


class VenueAvailabilityResponse(BaseModel):
    venue_id: int
    start_date: date
    end_date: date
    resources: dict[int, bool]
    cached: bool = False


class DateAvailability(BaseModel):
    date: date
    available: list[int]
    occupied: list[int]
    total: int


class DateAvailabilityResponse(BaseModel):
    venue_id: int
    dates: dict[date, DateAvailability]
