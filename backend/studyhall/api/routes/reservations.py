"""
Reservation endpoints with concurrency-safe booking.
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.api.deps import resolve_holder
from studyhall.core.exceptions import NotFoundError
from studyhall.core.security import get_optional_user_id
from studyhall.db.session import get_db
from studyhall.infrastructure.gateways import GatewayMap, get_gateways
from studyhall.models.venue import Venue
from studyhall.schemas.payment import (
    CheckoutCreate,
    CheckoutCreated,
    PaymentRetry,
    ReservationCreated,
    TransactionResponse,
)
from studyhall.schemas.reservation import ReservationCreate, ReservationResponse
from studyhall.services.interfaces.reservation_lock import ReservationLock
from studyhall.services.payment_service import create_checkout_intent, customer_for, start_payment
from studyhall.services.pricing_service import quote_for_venue
from studyhall.services.reservation_service import (
    create_retry_transaction,
    get_reservation,
    intent_for,
    reserve,
)
from studyhall.services.strategy_factory import get_reservation_lock

router = APIRouter(tags=["Reservations"])


@router.post("/reservations", response_model=ReservationCreated, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    body: ReservationCreate,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
    lock: ReservationLock = Depends(get_reservation_lock),
    gateways: GatewayMap = Depends(get_gateways),
):
    """
    Book a seat/cabin for an inclusive date range, then hand off to the gateway.

    409 if any pending/confirmed/active booking of the resource overlaps.
    A gateway outage does not fail the booking: the payment is reported
    as pending and can be retried.
    """
    holder = resolve_holder(user_id, body.guest)

    venue = await db.get(Venue, body.venue_id)
    if venue is None or not venue.is_active:
        raise NotFoundError(f"Venue {body.venue_id} not found")
    quote = quote_for_venue(venue, body.start_date, body.end_date)

    reservation, transaction = await reserve(
        db,
        lock,
        resource_id=body.resource_id,
        venue_id=body.venue_id,
        start_date=body.start_date,
        end_date=body.end_date,
        holder=holder,
        amount=quote.amount,
        period=quote.tier,
        payment_method=body.payment_method,
    )
    payment = await start_payment(db, gateways, transaction, customer_for(holder))

    return ReservationCreated(
        reservation=ReservationResponse.model_validate(reservation),
        transaction=TransactionResponse.model_validate(transaction),
        payment=payment,
    )


@router.get("/reservations/{reservation_id}", response_model=ReservationResponse)
async def read_reservation(reservation_id: int, db: AsyncSession = Depends(get_db)):
    return await get_reservation(db, reservation_id)


@router.post(
    "/reservations/{reservation_id}/payments",
    response_model=CheckoutCreated,
    status_code=status.HTTP_201_CREATED,
)
async def retry_payment(
    reservation_id: int,
    body: PaymentRetry,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayMap = Depends(get_gateways),
):
    """New payment attempt for a pending reservation."""
    transaction = await create_retry_transaction(db, reservation_id, body.payment_method)
    reservation = await get_reservation(db, reservation_id)
    payment = await start_payment(db, gateways, transaction, customer_for(intent_for(reservation).holder))
    return CheckoutCreated(transaction=TransactionResponse.model_validate(transaction), payment=payment)


@router.post("/checkout", response_model=CheckoutCreated, status_code=status.HTTP_201_CREATED)
async def checkout(
    body: CheckoutCreate,
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayMap = Depends(get_gateways),
):
    """
    Payment-first QR checkout: pay now, the reservation is created when the
    payment is confirmed. 409 if the seat is visibly taken already.
    """
    holder = resolve_holder(user_id, body.guest)
    transaction, payment = await create_checkout_intent(
        db,
        gateways,
        venue_id=body.venue_id,
        resource_id=body.resource_id,
        start_date=body.start_date,
        end_date=body.end_date,
        holder=holder,
        payment_method=body.payment_method,
    )
    return CheckoutCreated(transaction=TransactionResponse.model_validate(transaction), payment=payment)
