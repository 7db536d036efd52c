"""
Payment hand-off: open the gateway payment for a pending transaction.

Two flows reach here:
- reservation-first: reserve() already created the pending reservation,
  the transaction links it
- payment-first (QR checkout): the transaction only carries the
  reservation intent; finalize() creates the reservation once paid

A gateway failure never fails the transaction. It stays pending, the
client is told the payment is pending, and it can retry.
"""

import uuid
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.exceptions import GatewayError, NotFoundError, ReservationConflictError, ResourceNotFoundError
from studyhall.core.logging import get_logger
from studyhall.infrastructure.gateways import GatewayMap, PaymentCustomer
from studyhall.models.transaction import PaymentMethod, PaymentTransaction, TransactionStatus
from studyhall.models.venue import Resource, Venue
from studyhall.schemas.payment import PaymentHandoff, ReservationIntent
from studyhall.schemas.reservation import Holder
from studyhall.services.availability_service import is_range_free
from studyhall.services.pricing_service import quote_for_venue

logger = get_logger(__name__)

PAYMENT_DESCRIPTION = "Study Hall Booking"


def customer_for(holder: Holder) -> PaymentCustomer:
    return PaymentCustomer(name=holder.guest_name, email=holder.guest_email, phone=holder.guest_phone)


def new_payment_reference(transaction_id: int) -> str:
    return f"SH{transaction_id}-{uuid.uuid4().hex[:10]}"


async def start_payment(
    db: AsyncSession,
    gateways: GatewayMap,
    transaction: PaymentTransaction,
    customer: Optional[PaymentCustomer] = None,
) -> PaymentHandoff:
    if transaction.payment_method == PaymentMethod.OFFLINE:
        return PaymentHandoff(
            status="offline",
            gateway=PaymentMethod.OFFLINE,
            message="Pay at the venue. The booking is confirmed once the payment is recorded.",
        )

    gateway = gateways.get(transaction.payment_method)
    if gateway is None:
        raise NotFoundError(f"No gateway configured for {transaction.payment_method}")

    reference = new_payment_reference(transaction.id)
    try:
        created = await gateway.create_payment(
            amount=transaction.amount,
            reference=reference,
            description=PAYMENT_DESCRIPTION,
            customer=customer or PaymentCustomer(),
        )
    except GatewayError as e:
        transaction.merge_payment_data(gateway_error=e.message)
        await db.commit()
        logger.warning(
            "payment_start_failed",
            transaction_id=transaction.id,
            gateway=gateway.name,
            error=e.message,
            upstream_status=e.upstream_status,
        )
        return PaymentHandoff(
            status="pending",
            gateway=gateway.name,
            message="Payment pending: the payment provider is not reachable right now. Please retry shortly.",
        )

    transaction.external_reference = created.external_reference
    transaction.merge_payment_data(payment_reference=reference, gateway_order=created.raw)
    await db.commit()

    logger.info(
        "payment_started",
        transaction_id=transaction.id,
        gateway=gateway.name,
        external_reference=created.external_reference,
    )
    return PaymentHandoff(
        status="awaiting_payment",
        gateway=gateway.name,
        external_reference=created.external_reference,
        payment_url=created.payment_url,
        gateway_key=created.gateway_key,
    )


async def create_checkout_intent(
    db: AsyncSession,
    gateways: GatewayMap,
    *,
    venue_id: int,
    resource_id: int,
    start_date: date,
    end_date: date,
    holder: Holder,
    payment_method: str,
) -> tuple[PaymentTransaction, PaymentHandoff]:
    """
    Payment-first checkout: store a transaction carrying the reservation
    intent, with no reservation yet, and open the gateway payment.

    The availability check here only saves the customer from paying for a
    seat that is visibly taken. finalize() re-checks under the resource lock.
    """
    venue = await db.get(Venue, venue_id)
    if venue is None or not venue.is_active:
        raise NotFoundError(f"Venue {venue_id} not found")

    resource = await db.get(Resource, resource_id)
    if resource is None or resource.venue_id != venue_id:
        raise ResourceNotFoundError(resource_id, venue_id)

    availability = await is_range_free(db, resource_id, start_date, end_date)
    if not availability.free:
        raise ReservationConflictError(resource_id, [c.reservation_id for c in availability.conflicts])

    quote = quote_for_venue(venue, start_date, end_date)
    intent = ReservationIntent(
        resource_id=resource_id,
        venue_id=venue_id,
        start_date=start_date,
        end_date=end_date,
        amount=quote.amount,
        booking_period=quote.tier,
        holder=holder,
    )

    transaction = PaymentTransaction(
        reservation_id=None,
        user_id=holder.user_id,
        amount=quote.amount,
        payment_method=payment_method,
        status=TransactionStatus.PENDING,
        payment_data={"intent": intent.to_payment_data(), "flow": "payment_first"},
    )
    db.add(transaction)
    await db.commit()

    logger.info(
        "checkout_intent_created",
        transaction_id=transaction.id,
        resource_id=resource_id,
        venue_id=venue_id,
        start_date=str(start_date),
        end_date=str(end_date),
        amount=str(quote.amount),
        tier=quote.tier,
    )
    handoff = await start_payment(db, gateways, transaction, customer_for(holder))
    return transaction, handoff
