"""
Shared route dependencies.
"""

from typing import Optional

from fastapi import HTTPException, status
from pydantic import ValidationError

from studyhall.schemas.reservation import GuestDetails, Holder


def resolve_holder(user_id: Optional[str], guest: Optional[GuestDetails]) -> Holder:
    """Token user wins; without a token the guest details are required."""
    if user_id is not None:
        return Holder.registered(user_id)
    if guest is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Sign in or provide guest name and phone",
        )
    try:
        return Holder.guest(guest.name, guest.phone, guest.email)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
