"""
Pydantic schemas for reservations and the holder identity.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, EmailStr, Field, model_validator


class Holder(BaseModel):
    """Registered user id, or a guest (name, phone, email) for anonymous checkout."""

    user_id: Optional[str] = None
    guest_name: Optional[str] = Field(None, min_length=1, max_length=255)
    guest_phone: Optional[str] = Field(None, min_length=6, max_length=32)
    guest_email: Optional[EmailStr] = None

    @model_validator(mode="after")
    def check_identity(self):
        if self.user_id is None and not (self.guest_name and self.guest_phone):
            raise ValueError("Either a user id or guest name and phone are required")
        return self

    @classmethod
    def registered(cls, user_id: str) -> "Holder":
        return cls(user_id=user_id)

    @classmethod
    def guest(cls, name: str, phone: str, email: Optional[str] = None) -> "Holder":
        return cls(guest_name=name, guest_phone=phone, guest_email=email)


class GuestDetails(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=6, max_length=32)
    email: Optional[EmailStr] = None


class ReservationCreate(BaseModel):
    venue_id: int
    resource_id: int
    start_date: date
    end_date: date
    payment_method: Literal["ekqr", "razorpay", "offline"] = "ekqr"
    guest: Optional[GuestDetails] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class ReservationResponse(BaseModel):
    id: int
    resource_id: int
    venue_id: int
    user_id: Optional[str]
    guest_name: Optional[str]
    start_date: date
    end_date: date
    status: str
    payment_status: str
    total_amount: Decimal
    booking_period: str
    vacated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class VacateRequest(BaseModel):
    reason: str = Field("Vacated by operator", max_length=255)


class CancelRequest(BaseModel):
    reason: str = Field("Cancelled by operator", max_length=255)


class ReleaseResult(BaseModel):
    released_count: int
    reservation_ids: list[int] = []
