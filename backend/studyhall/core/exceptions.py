"""
Exception hierarchy for the booking core.

Every error is an HTTPException so FastAPI renders it with the right status
code, while services can still catch them by type. Payment finalization
errors never travel back to the checkout request that started the payment;
they are raised inside the reconciliation pipeline and handled there.
"""

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class BookingAPIException(HTTPException):
    """Base exception for booking core errors."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}


class NotFoundError(BookingAPIException):
    """Unknown venue, reservation or transaction."""

    def __init__(self, detail: str = "Not found", **kwargs):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail, **kwargs)


class ResourceNotFoundError(NotFoundError):
    """The seat/cabin does not exist (or is not part of the given venue)."""

    def __init__(self, resource_id: int, venue_id: Optional[int] = None):
        detail = f"Resource {resource_id} not found"
        if venue_id is not None:
            detail = f"Resource {resource_id} not found in venue {venue_id}"
        super().__init__(
            detail=detail,
            context={"resource_id": resource_id, "venue_id": venue_id},
        )
        self.resource_id = resource_id


class ReservationConflictError(BookingAPIException):
    """The resource is already held for an overlapping date range."""

    def __init__(self, resource_id: int, conflicting_ids: Optional[List[int]] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="Resource is already booked for the selected dates. Please pick another date or seat.",
            context={"resource_id": resource_id, "conflicting_reservation_ids": conflicting_ids or []},
        )
        self.resource_id = resource_id
        self.conflicting_ids = conflicting_ids or []


class LockUnavailableError(BookingAPIException):
    """Another request is holding the resource lock for too long."""

    def __init__(self, key: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="This seat is being booked by someone else right now. Please try again.",
            context={"lock_key": key},
        )


class InvalidDateRangeError(BookingAPIException):
    """start_date is after end_date."""

    def __init__(self, start_date, end_date):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Start date {start_date} must not be after end date {end_date}",
        )


class InvalidStateError(BookingAPIException):
    """The record is not in a state that allows the requested transition."""

    def __init__(self, detail: str, **kwargs):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail, **kwargs)


class AvailabilityLookupError(BookingAPIException):
    """The reservation store could not be queried; never read as 'available'."""

    def __init__(self, detail: str = "Could not verify availability, please try again"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class GatewayError(BookingAPIException):
    """Payment provider unreachable or rejected the call."""

    def __init__(
        self,
        gateway: str,
        message: str,
        upstream_status: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"{gateway} error: {message}",
            context={"gateway": gateway, "upstream_status": upstream_status},
        )
        self.gateway = gateway
        self.message = message
        self.upstream_status = upstream_status
        self.response_body = response_body


class PaymentVerificationError(BookingAPIException):
    """A gateway signature did not match."""

    def __init__(self, detail: str = "Invalid payment signature"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class InconsistencyError(BookingAPIException):
    """
    Payment confirmed but the reservation could not be materialized.
    Recorded on the transaction so manual recovery can repair it later.
    """

    def __init__(
        self,
        transaction_id: int,
        reason: str,
        intent: Optional[Dict[str, Any]] = None,
        refund_required: bool = False,
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Transaction {transaction_id} could not be reconciled: {reason}",
            context={"transaction_id": transaction_id, "intent": intent},
        )
        self.transaction_id = transaction_id
        self.reason = reason
        self.intent = intent
        self.refund_required = refund_required
