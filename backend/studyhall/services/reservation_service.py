"""
Reservation service with concurrency-safe seat/cabin booking.

CONCURRENCY STRATEGY: Per-resource lock + row lock, commit inside the lock
==========================================================================

Problem:
  Two users ask for overlapping dates on the same seat simultaneously.
  Both run the overlap query, both see no conflict, both insert.
  Result: Double booking.

Solution:
  Check-then-insert must be one critical section per resource.

  1. Acquire the ReservationLock for "resource:{id}" (asyncio lock in one
     process, Redis lock across instances)
  2. SELECT the resource row FOR UPDATE (serializes writers that bypass
     the application lock, e.g. another service on the same database)
  3. Query holding reservations that overlap [start, end]
  4. Insert reservation + transaction, flip the resource hint
  5. COMMIT, then release the lock

  Releasing the lock before the commit would let the next waiter run its
  overlap query without seeing our row, so the commit happens inside it.

  On PostgreSQL the btree_gist exclusion constraint on reservations is
  the final safety net; its IntegrityError is reported as a conflict.

Alternative approaches considered:
  - Optimistic version column on the resource: retries under contention,
    and a version bump does not describe date ranges.
  - SERIALIZABLE isolation: correct, but every booking pays for retries.
"""

import time
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.exceptions import (
    AvailabilityLookupError,
    InvalidStateError,
    NotFoundError,
    ReservationConflictError,
    ResourceNotFoundError,
)
from studyhall.core.logging import get_logger
from studyhall.core.metrics import record_reservation_attempt, reservation_latency
from studyhall.db.base import utcnow
from studyhall.models.reservation import PaymentStatus, Reservation, ReservationStatus
from studyhall.models.transaction import PaymentTransaction, TransactionStatus
from studyhall.models.venue import Resource
from studyhall.schemas.payment import ReservationIntent
from studyhall.schemas.reservation import Holder
from studyhall.services.availability_service import find_conflicts
from studyhall.services.cache_service import get_availability_cache
from studyhall.services.interfaces.reservation_lock import ReservationLock, resource_lock_key
from studyhall.services.pricing_service import count_days

logger = get_logger(__name__)


async def lock_resource_row(db: AsyncSession, resource_id: int, venue_id: int) -> Resource:
    """SELECT ... FOR UPDATE the resource; it must exist and belong to the venue."""
    result = await db.execute(select(Resource).where(Resource.id == resource_id).with_for_update())
    resource = result.scalar_one_or_none()
    if resource is None or resource.venue_id != venue_id:
        raise ResourceNotFoundError(resource_id, venue_id)
    return resource


async def ensure_no_conflict(db: AsyncSession, resource_id: int, start_date: date, end_date: date) -> None:
    try:
        conflicts = await find_conflicts(db, resource_id, start_date, end_date)
    except SQLAlchemyError as e:
        logger.error("availability_lookup_failed", resource_id=resource_id, error=str(e))
        raise AvailabilityLookupError()

    if conflicts:
        raise ReservationConflictError(resource_id, [r.id for r in conflicts])


def build_reservation(intent: ReservationIntent, status: str = ReservationStatus.PENDING) -> Reservation:
    holder = intent.holder
    return Reservation(
        resource_id=intent.resource_id,
        venue_id=intent.venue_id,
        user_id=holder.user_id,
        guest_name=holder.guest_name,
        guest_phone=holder.guest_phone,
        guest_email=holder.guest_email,
        start_date=intent.start_date,
        end_date=intent.end_date,
        status=status,
        payment_status=PaymentStatus.UNPAID,
        total_amount=intent.amount,
        booking_period=intent.booking_period,
    )


def intent_for(reservation: Reservation) -> ReservationIntent:
    return ReservationIntent(
        resource_id=reservation.resource_id,
        venue_id=reservation.venue_id,
        start_date=reservation.start_date,
        end_date=reservation.end_date,
        amount=reservation.total_amount,
        booking_period=reservation.booking_period,
        holder=Holder(
            user_id=reservation.user_id,
            guest_name=reservation.guest_name,
            guest_phone=reservation.guest_phone,
            guest_email=reservation.guest_email,
        ),
    )


async def reserve(
    db: AsyncSession,
    lock: ReservationLock,
    *,
    resource_id: int,
    venue_id: int,
    start_date: date,
    end_date: date,
    holder: Holder,
    amount: Decimal,
    period: str,
    payment_method: str,
) -> tuple[Reservation, PaymentTransaction]:
    """
    Create a pending reservation and its pending payment transaction.

    Raises:
        InvalidDateRangeError: start_date after end_date
        ResourceNotFoundError: unknown resource, or not in this venue
        ReservationConflictError: an overlapping holding reservation exists
        AvailabilityLookupError: the overlap check could not run
    """
    count_days(start_date, end_date)
    intent = ReservationIntent(
        resource_id=resource_id,
        venue_id=venue_id,
        start_date=start_date,
        end_date=end_date,
        amount=amount,
        booking_period=period,
        holder=holder,
    )

    started = time.perf_counter()
    try:
        async with lock.hold(resource_lock_key(resource_id)):
            resource = await lock_resource_row(db, resource_id, venue_id)
            await ensure_no_conflict(db, resource_id, start_date, end_date)

            reservation = build_reservation(intent)
            db.add(reservation)
            await db.flush()

            transaction = PaymentTransaction(
                reservation_id=reservation.id,
                user_id=holder.user_id,
                amount=amount,
                payment_method=payment_method,
                status=TransactionStatus.PENDING,
                payment_data={"intent": intent.to_payment_data()},
            )
            db.add(transaction)
            resource.is_available = False

            try:
                await db.commit()
            except IntegrityError as e:
                # Exclusion constraint caught a writer that bypassed the lock
                await db.rollback()
                logger.warning("reservation_constraint_conflict", resource_id=resource_id, error=str(e.orig))
                raise ReservationConflictError(resource_id)
    except ReservationConflictError as e:
        await db.rollback()
        record_reservation_attempt("conflict")
        logger.info(
            "reservation_conflict",
            resource_id=resource_id,
            start_date=str(start_date),
            end_date=str(end_date),
            conflicting_ids=e.conflicting_ids,
        )
        raise
    except ResourceNotFoundError:
        await db.rollback()
        record_reservation_attempt("not_found")
        raise
    except Exception:
        await db.rollback()
        record_reservation_attempt("error")
        raise
    finally:
        reservation_latency.observe(time.perf_counter() - started)

    record_reservation_attempt("success")
    logger.info(
        "reservation_created",
        reservation_id=reservation.id,
        transaction_id=transaction.id,
        resource_id=resource_id,
        venue_id=venue_id,
        start_date=str(start_date),
        end_date=str(end_date),
        amount=str(amount),
        period=period,
        guest=holder.user_id is None,
    )
    await get_availability_cache().invalidate_venue(venue_id)
    return reservation, transaction


async def get_reservation(db: AsyncSession, reservation_id: int) -> Reservation:
    reservation = await db.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError(f"Reservation {reservation_id} not found")
    return reservation


async def get_reservation_for_update(db: AsyncSession, reservation_id: int) -> Reservation:
    result = await db.execute(
        select(Reservation)
        .where(Reservation.id == reservation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    reservation = result.scalar_one_or_none()
    if reservation is None:
        raise NotFoundError(f"Reservation {reservation_id} not found")
    return reservation


async def create_retry_transaction(
    db: AsyncSession, reservation_id: int, payment_method: str
) -> PaymentTransaction:
    """
    New pending transaction for a reservation whose earlier payment attempt did not go through.

    An earlier attempt that already reached a gateway may still be paid, so
    it blocks the retry until it settles. Attempts that never got a gateway
    reference (gateway down, desk payment) are marked failed and replaced.
    """
    reservation = await get_reservation_for_update(db, reservation_id)
    if reservation.status != ReservationStatus.PENDING or reservation.payment_status == PaymentStatus.PAID:
        current_status = reservation.status
        await db.rollback()
        raise InvalidStateError(
            f"Reservation {reservation_id} is {current_status}; only pending reservations accept payments",
            context={"reservation_id": reservation_id, "status": current_status},
        )

    result = await db.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.reservation_id == reservation_id,
            PaymentTransaction.status == TransactionStatus.PENDING,
        )
        .with_for_update()
    )
    open_attempts = list(result.scalars().all())
    in_flight = [t.id for t in open_attempts if t.external_reference is not None]
    if in_flight:
        await db.rollback()
        raise InvalidStateError(
            f"Reservation {reservation_id} has a payment in progress; wait for it to settle",
            context={"reservation_id": reservation_id, "pending_transaction_ids": in_flight},
        )

    now = utcnow()
    for superseded in open_attempts:
        superseded.status = TransactionStatus.FAILED
        superseded.merge_payment_data(
            failed_by="payment_retry", failure_reason="superseded by a new payment attempt", failed_at=now.isoformat()
        )

    transaction = PaymentTransaction(
        reservation_id=reservation.id,
        user_id=reservation.user_id,
        amount=reservation.total_amount,
        payment_method=payment_method,
        status=TransactionStatus.PENDING,
        payment_data={"intent": intent_for(reservation).to_payment_data(), "retry": True},
    )
    db.add(transaction)
    await db.commit()

    logger.info(
        "payment_retry_created",
        reservation_id=reservation.id,
        transaction_id=transaction.id,
        payment_method=payment_method,
        superseded=[t.id for t in open_attempts],
    )
    return transaction


async def get_transaction(db: AsyncSession, transaction_id: int) -> PaymentTransaction:
    transaction = await db.get(PaymentTransaction, transaction_id)
    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return transaction


async def get_transaction_for_update(db: AsyncSession, transaction_id: int) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
