"""
Payment reconciliation pipeline.

STATE MACHINE
=============

  pending --finalize()--> completed   (reservation paid + confirmed/active)
  pending --mark_failed()--> failed   (reservation left as it is)

Every entry point (webhook, recovery sweep, manual recovery, checkout
verification) funnels into finalize() or mark_failed(), so the same
payment reported twice, or by two entry points at once, is applied once:

  1. Acquire the ReservationLock for "transaction:{id}"
  2. SELECT the transaction FOR UPDATE
  3. Terminal already? Return already_completed / already_failed
  4. Otherwise materialize the reservation and commit

When the transaction carries only an intent (payment-first checkout) the
reservation is created under the resource lock after re-checking overlap.
Lock order is always transaction -> resource.

If that is impossible (intent missing, seat taken meanwhile) an
InconsistencyError is raised: the work is rolled back, the reason is
written to payment_data["reconciliation_error"] and the transaction stays
pending so it shows up in the admin pending list. Money received without
a booking is never silently dropped. The same holds for a second paid
attempt of an already paid booking: it is flagged refund_required instead
of confirming the booking twice.

Outside the state machine, cancel_pending() lets an operator give up on a
pending reservation once none of its payment attempts can still settle.
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.config import get_settings
from studyhall.core.exceptions import (
    AvailabilityLookupError,
    GatewayError,
    InconsistencyError,
    InvalidStateError,
    LockUnavailableError,
    NotFoundError,
    PaymentVerificationError,
    ReservationConflictError,
    ResourceNotFoundError,
)
from studyhall.core.logging import get_logger
from studyhall.core.metrics import pending_transactions_checked, record_reconciliation, record_release
from studyhall.db.base import utcnow
from studyhall.infrastructure.gateways import GatewayMap, GatewayNotification, PaymentState
from studyhall.infrastructure.gateways.razorpay import RazorpayGateway
from studyhall.models.booking_event import BookingEvent
from studyhall.models.reservation import PaymentStatus, Reservation, ReservationStatus
from studyhall.models.transaction import PaymentMethod, PaymentTransaction, TransactionStatus
from studyhall.models.venue import Resource
from studyhall.schemas.payment import (
    FinalizeResult,
    ManualRecoveryResult,
    RecoverySummary,
    ReservationIntent,
    WebhookResult,
)
from studyhall.services.cache_service import get_availability_cache
from studyhall.services.expiry_service import refresh_resource_flags
from studyhall.services.interfaces.reservation_lock import (
    ReservationLock,
    resource_lock_key,
    transaction_lock_key,
)
from studyhall.services.reservation_service import (
    build_reservation,
    ensure_no_conflict,
    get_transaction_for_update,
    lock_resource_row,
)

logger = get_logger(__name__)

SWEEP_BATCH_SIZE = 100


def status_for_start(start_date: date, today: Optional[date] = None) -> str:
    """A paid booking is active once its first day has arrived."""
    today = today or date.today()
    return ReservationStatus.ACTIVE if start_date <= today else ReservationStatus.CONFIRMED


async def find_transaction_by_reference(
    db: AsyncSession, payment_method: str, external_reference: str
) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction).where(
            PaymentTransaction.payment_method == payment_method,
            PaymentTransaction.external_reference == external_reference,
        )
    )
    return result.scalar_one_or_none()


async def _complete(
    db: AsyncSession,
    transaction: PaymentTransaction,
    reservation: Reservation,
    resource: Optional[Resource],
    *,
    source: str,
    gateway_details: Optional[Dict[str, Any]],
) -> None:
    """Mark reservation paid, transaction completed, write the outbox event, commit."""
    now = utcnow()
    reservation.payment_status = PaymentStatus.PAID
    reservation.status = status_for_start(reservation.start_date)
    if resource is not None:
        resource.is_available = False

    transaction.status = TransactionStatus.COMPLETED
    transaction.reservation_id = reservation.id
    transaction.completed_at = transaction.completed_at or now
    details = dict(gateway_details or {})
    if details.get("gateway_payment_id"):
        transaction.gateway_payment_id = details["gateway_payment_id"]
    transaction.merge_payment_data(
        reconciled_by=source,
        reconciled_at=now.isoformat(),
        gateway_details=details,
    )

    db.add(
        BookingEvent(
            event_type="booking_confirmed",
            reservation_id=reservation.id,
            transaction_id=transaction.id,
            user_id=reservation.user_id,
            amount=transaction.amount,
            payload={
                "resource_id": reservation.resource_id,
                "venue_id": reservation.venue_id,
                "start_date": reservation.start_date.isoformat(),
                "end_date": reservation.end_date.isoformat(),
                "guest_name": reservation.guest_name,
                "guest_phone": reservation.guest_phone,
                "booking_period": reservation.booking_period,
                "source": source,
            },
        )
    )
    await db.commit()


async def _materialize_linked(
    db: AsyncSession,
    lock: ReservationLock,
    transaction: PaymentTransaction,
    *,
    source: str,
    gateway_details: Optional[Dict[str, Any]],
) -> Reservation:
    linked = await db.get(Reservation, transaction.reservation_id, populate_existing=True)
    if linked is None:
        raise InconsistencyError(transaction.id, "linked reservation does not exist")

    # Two paid attempts of one booking serialize on its resource
    async with lock.hold(resource_lock_key(linked.resource_id)):
        reservation = await db.get(
            Reservation, transaction.reservation_id, with_for_update=True, populate_existing=True
        )
        return await _settle_linked(
            db, transaction, reservation, source=source, gateway_details=gateway_details
        )


async def _settle_linked(
    db: AsyncSession,
    transaction: PaymentTransaction,
    reservation: Reservation,
    *,
    source: str,
    gateway_details: Optional[Dict[str, Any]],
) -> Reservation:
    intent = (transaction.payment_data or {}).get("intent")
    if not reservation.holds_resource:
        # Cancelled while the payment was in flight; refund is an operator decision
        raise InconsistencyError(
            transaction.id,
            f"linked reservation {reservation.id} is {reservation.status}",
            intent=intent,
            refund_required=True,
        )
    if reservation.payment_status == PaymentStatus.PAID:
        # A second attempt for the same booking was paid as well
        result = await db.execute(
            select(PaymentTransaction.id)
            .where(
                PaymentTransaction.reservation_id == reservation.id,
                PaymentTransaction.status == TransactionStatus.COMPLETED,
                PaymentTransaction.id != transaction.id,
            )
            .limit(1)
        )
        raise InconsistencyError(
            transaction.id,
            f"linked reservation {reservation.id} already paid by transaction {result.scalar_one_or_none()}",
            intent=intent,
            refund_required=True,
        )

    resource = await db.get(Resource, reservation.resource_id)
    await _complete(db, transaction, reservation, resource, source=source, gateway_details=gateway_details)
    return reservation


async def _materialize_from_intent(
    db: AsyncSession,
    lock: ReservationLock,
    transaction: PaymentTransaction,
    *,
    source: str,
    gateway_details: Optional[Dict[str, Any]],
) -> Reservation:
    raw_intent = (transaction.payment_data or {}).get("intent")
    intent = ReservationIntent.from_payment_data(transaction.payment_data)
    if intent is None:
        raise InconsistencyError(transaction.id, "missing or invalid reservation intent", intent=raw_intent)

    async with lock.hold(resource_lock_key(intent.resource_id)):
        try:
            resource = await lock_resource_row(db, intent.resource_id, intent.venue_id)
            await ensure_no_conflict(db, intent.resource_id, intent.start_date, intent.end_date)
        except ResourceNotFoundError:
            raise InconsistencyError(transaction.id, "resource no longer exists", intent=raw_intent)
        except ReservationConflictError as e:
            raise InconsistencyError(
                transaction.id,
                f"resource taken meanwhile by reservations {e.conflicting_ids}",
                intent=raw_intent,
            )

        reservation = build_reservation(intent)
        db.add(reservation)
        await db.flush()
        try:
            await _complete(db, transaction, reservation, resource, source=source, gateway_details=gateway_details)
        except IntegrityError as e:
            raise InconsistencyError(
                transaction.id, f"reservation rejected by the database: {e.orig}", intent=raw_intent
            )
    return reservation


async def _record_reconciliation_error(
    db: AsyncSession, transaction_id: int, error: InconsistencyError, source: str
) -> None:
    transaction = await get_transaction_for_update(db, transaction_id)
    if transaction is None:
        return
    transaction.merge_payment_data(
        reconciliation_error={
            "reason": error.reason,
            "source": source,
            "at": utcnow().isoformat(),
            "refund_required": error.refund_required,
        }
    )
    await db.commit()


async def finalize(
    db: AsyncSession,
    lock: ReservationLock,
    transaction_id: int,
    *,
    source: str,
    gateway_details: Optional[Dict[str, Any]] = None,
) -> FinalizeResult:
    """
    Apply a confirmed payment exactly once.

    Raises:
        NotFoundError: unknown transaction
        InconsistencyError: paid, but the reservation cannot be materialized
    """
    async with lock.hold(transaction_lock_key(transaction_id)):
        transaction = await get_transaction_for_update(db, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        if transaction.status == TransactionStatus.FAILED:
            await db.rollback()
            record_reconciliation(source, "already_failed")
            logger.info("finalize_skipped_failed", transaction_id=transaction_id, source=source)
            return FinalizeResult(transaction_id=transaction_id, outcome="already_failed")

        if transaction.status == TransactionStatus.COMPLETED and transaction.reservation_id is not None:
            reservation_id = transaction.reservation_id
            await db.rollback()
            record_reconciliation(source, "already_completed")
            logger.info(
                "finalize_skipped_completed",
                transaction_id=transaction_id,
                reservation_id=reservation_id,
                source=source,
            )
            return FinalizeResult(
                transaction_id=transaction_id, outcome="already_completed", reservation_id=reservation_id
            )

        try:
            if transaction.reservation_id is not None:
                reservation = await _materialize_linked(
                    db, lock, transaction, source=source, gateway_details=gateway_details
                )
            else:
                reservation = await _materialize_from_intent(
                    db, lock, transaction, source=source, gateway_details=gateway_details
                )
        except (AvailabilityLookupError, LockUnavailableError):
            await db.rollback()
            raise
        except InconsistencyError as e:
            await db.rollback()
            await _record_reconciliation_error(db, transaction_id, e, source)
            record_reconciliation(source, "inconsistent")
            logger.error(
                "reconciliation_inconsistent",
                transaction_id=transaction_id,
                source=source,
                reason=e.reason,
                intent=e.intent,
                refund_required=e.refund_required,
            )
            raise

        reservation_id = reservation.id
        venue_id = reservation.venue_id

    record_reconciliation(source, "completed")
    logger.info(
        "payment_finalized",
        transaction_id=transaction_id,
        reservation_id=reservation_id,
        source=source,
    )
    await get_availability_cache().invalidate_venue(venue_id)
    return FinalizeResult(transaction_id=transaction_id, outcome="completed", reservation_id=reservation_id)


async def mark_failed(
    db: AsyncSession,
    lock: ReservationLock,
    transaction_id: int,
    *,
    source: str,
    reason: str,
) -> FinalizeResult:
    """pending -> failed. The linked reservation stays pending for a payment retry."""
    async with lock.hold(transaction_lock_key(transaction_id)):
        transaction = await get_transaction_for_update(db, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        if transaction.is_terminal:
            outcome = "already_completed" if transaction.status == TransactionStatus.COMPLETED else "already_failed"
            reservation_id = transaction.reservation_id
            await db.rollback()
            record_reconciliation(source, outcome)
            return FinalizeResult(transaction_id=transaction_id, outcome=outcome, reservation_id=reservation_id)

        transaction.status = TransactionStatus.FAILED
        transaction.merge_payment_data(failed_by=source, failure_reason=reason, failed_at=utcnow().isoformat())
        reservation_id = transaction.reservation_id
        await db.commit()

    record_reconciliation(source, "failed")
    logger.info("payment_failed", transaction_id=transaction_id, source=source, reason=reason)
    return FinalizeResult(transaction_id=transaction_id, outcome="failed", reservation_id=reservation_id)


async def handle_notification(
    db: AsyncSession,
    lock: ReservationLock,
    payment_method: str,
    notification: GatewayNotification,
) -> WebhookResult:
    """Apply one gateway webhook. Every outcome is reported in the result, never raised."""
    transaction = await find_transaction_by_reference(db, payment_method, notification.reference)
    if transaction is None:
        record_reconciliation("webhook", "unknown_reference")
        logger.warning("webhook_unknown_reference", gateway=payment_method, reference=notification.reference)
        return WebhookResult(status="unknown_reference", message=f"No transaction for {notification.reference}")

    transaction_id = transaction.id
    details = {
        "gateway_payment_id": notification.gateway_payment_id,
        "gateway_amount": str(notification.amount) if notification.amount is not None else None,
        "gateway_timestamp": notification.timestamp.isoformat() if notification.timestamp else None,
    }

    if notification.state == PaymentState.PENDING:
        await db.rollback()
        record_reconciliation("webhook", "no_action")
        return WebhookResult(status="no_action", transaction_id=transaction_id)

    if notification.state == PaymentState.FAILED:
        await db.rollback()
        result = await mark_failed(db, lock, transaction_id, source="webhook", reason="gateway reported failure")
        return WebhookResult(
            status=result.outcome, transaction_id=transaction_id, reservation_id=result.reservation_id
        )

    if (
        transaction.status == TransactionStatus.PENDING
        and notification.amount is not None
        and notification.amount != transaction.amount
    ):
        expected = transaction.amount
        transaction.merge_payment_data(
            amount_mismatch={"expected": str(expected), "received": str(notification.amount)}
        )
        await db.commit()
        record_reconciliation("webhook", "amount_mismatch")
        logger.error(
            "webhook_amount_mismatch",
            transaction_id=transaction_id,
            expected=str(expected),
            received=str(notification.amount),
        )
        return WebhookResult(
            status="amount_mismatch",
            transaction_id=transaction_id,
            message=f"Expected {expected}, received {notification.amount}",
        )

    await db.rollback()
    try:
        result = await finalize(db, lock, transaction_id, source="webhook", gateway_details=details)
    except InconsistencyError as e:
        return WebhookResult(status="inconsistent", transaction_id=transaction_id, message=e.reason)
    return WebhookResult(status=result.outcome, transaction_id=transaction_id, reservation_id=result.reservation_id)


async def run_recovery_sweep(
    db: AsyncSession,
    lock: ReservationLock,
    gateways: GatewayMap,
    *,
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> RecoverySummary:
    """
    Poll the gateway for pending transactions the webhook never settled.

    Gateway errors are counted and left for the next sweep. A transaction
    is only failed when the gateway says so.
    """
    settings = get_settings()
    older_than = older_than if older_than is not None else timedelta(minutes=settings.RECOVERY_STALE_AFTER_MINUTES)
    cutoff = (now or utcnow()) - older_than

    result = await db.execute(
        select(
            PaymentTransaction.id,
            PaymentTransaction.payment_method,
            PaymentTransaction.external_reference,
            PaymentTransaction.created_at,
        )
        .where(
            PaymentTransaction.status == TransactionStatus.PENDING,
            PaymentTransaction.payment_method.in_(PaymentMethod.GATEWAYS),
            PaymentTransaction.external_reference.is_not(None),
            PaymentTransaction.created_at < cutoff,
        )
        .order_by(PaymentTransaction.created_at)
        .limit(SWEEP_BATCH_SIZE)
    )
    candidates = result.all()
    await db.rollback()

    summary = RecoverySummary()
    for transaction_id, method, reference, created_at in candidates:
        summary.checked += 1
        pending_transactions_checked.inc()

        gateway = gateways.get(method)
        if gateway is None:
            summary.still_pending += 1
            continue

        try:
            status = await gateway.check_status(reference, created_at)
        except GatewayError as e:
            summary.still_pending += 1
            summary.errors.append(f"transaction {transaction_id}: {e.message}")
            continue

        if status.state == PaymentState.SUCCESS:
            try:
                outcome = await finalize(
                    db,
                    lock,
                    transaction_id,
                    source="recovery_sweep",
                    gateway_details={
                        "gateway_payment_id": status.gateway_payment_id,
                        "gateway_amount": str(status.amount) if status.amount is not None else None,
                    },
                )
            except InconsistencyError as e:
                summary.still_pending += 1
                summary.errors.append(f"transaction {transaction_id}: {e.reason}")
                continue
            except LockUnavailableError as e:
                summary.still_pending += 1
                summary.errors.append(f"transaction {transaction_id}: {e.detail}")
                continue
            if outcome.outcome in ("completed", "already_completed"):
                summary.recovered += 1
            else:
                summary.failed += 1
        elif status.state == PaymentState.FAILED:
            try:
                outcome = await mark_failed(
                    db, lock, transaction_id, source="recovery_sweep", reason="gateway reported failure"
                )
            except LockUnavailableError as e:
                summary.still_pending += 1
                summary.errors.append(f"transaction {transaction_id}: {e.detail}")
                continue
            if outcome.outcome == "already_completed":
                summary.recovered += 1
            else:
                summary.failed += 1
        else:
            summary.still_pending += 1

    logger.info(
        "recovery_sweep_completed",
        checked=summary.checked,
        recovered=summary.recovered,
        failed=summary.failed,
        still_pending=summary.still_pending,
        errors=len(summary.errors),
    )
    return summary


async def manual_recover(
    db: AsyncSession,
    lock: ReservationLock,
    target: Union[int, str],
    payment_method: Optional[str] = None,
) -> List[ManualRecoveryResult]:
    """
    Operator asserts the payment was received: finalize without polling.
    `target` is a transaction id or "all" (every pending transaction,
    optionally only those of `payment_method`).
    """
    if target == "all":
        query = select(PaymentTransaction.id).where(PaymentTransaction.status == TransactionStatus.PENDING)
        if payment_method is not None:
            query = query.where(PaymentTransaction.payment_method == payment_method)
        result = await db.execute(query.order_by(PaymentTransaction.created_at))
        transaction_ids = list(result.scalars().all())
        await db.rollback()
    else:
        transaction_ids = [int(target)]

    results = []
    for transaction_id in transaction_ids:
        try:
            outcome = await finalize(db, lock, transaction_id, source="manual")
        except (InconsistencyError, LockUnavailableError, NotFoundError) as e:
            results.append(ManualRecoveryResult(transaction_id=transaction_id, success=False, error=e.detail))
            continue
        results.append(
            ManualRecoveryResult(
                transaction_id=transaction_id,
                success=outcome.outcome in ("completed", "already_completed"),
                outcome=outcome.outcome,
                reservation_id=outcome.reservation_id,
            )
        )

    logger.info(
        "manual_recovery_completed",
        target=target,
        payment_method=payment_method,
        processed=len(results),
        succeeded=sum(1 for r in results if r.success),
    )
    return results


async def verify_checkout(
    db: AsyncSession,
    lock: ReservationLock,
    gateway: RazorpayGateway,
    order_id: str,
    payment_id: str,
    signature: str,
) -> FinalizeResult:
    """Hosted-checkout callback from the client: trust it only with a valid signature."""
    if not gateway.verify_checkout_signature(order_id, payment_id, signature):
        record_reconciliation("checkout_verification", "invalid_signature")
        logger.warning("checkout_signature_invalid", order_id=order_id, payment_id=payment_id)
        raise PaymentVerificationError()

    transaction = await find_transaction_by_reference(db, PaymentMethod.RAZORPAY, order_id)
    if transaction is None:
        raise NotFoundError(f"No transaction for order {order_id}")
    transaction_id = transaction.id
    await db.rollback()

    try:
        return await finalize(
            db,
            lock,
            transaction_id,
            source="checkout_verification",
            gateway_details={"gateway_payment_id": payment_id},
        )
    except InconsistencyError:
        raise InvalidStateError(
            "Payment received but the booking could not be confirmed. Our team will contact you.",
            context={"transaction_id": transaction_id},
        )


async def list_pending_transactions(db: AsyncSession, older_than_minutes: int = 0) -> List[PaymentTransaction]:
    """Pending transactions for the admin view, oldest first."""
    query = select(PaymentTransaction).where(PaymentTransaction.status == TransactionStatus.PENDING)
    if older_than_minutes > 0:
        query = query.where(PaymentTransaction.created_at < utcnow() - timedelta(minutes=older_than_minutes))
    result = await db.execute(query.order_by(PaymentTransaction.created_at))
    return list(result.scalars().all())


async def cancel_pending(
    db: AsyncSession,
    reservation_id: int,
    reason: str,
    today: Optional[date] = None,
) -> Reservation:
    """
    Operator cancels a pending reservation that no payment will settle.

    Refused while any of its transactions is pending (it may still be paid)
    or completed. One conditional UPDATE, so a cancel racing a finalize or
    a second cancel applies at most once.
    """
    today = today or date.today()
    now = utcnow()
    open_payment = (
        select(PaymentTransaction.id)
        .where(
            PaymentTransaction.reservation_id == reservation_id,
            PaymentTransaction.status.in_((TransactionStatus.PENDING, TransactionStatus.COMPLETED)),
        )
        .exists()
    )

    result = await db.execute(
        update(Reservation)
        .where(
            Reservation.id == reservation_id,
            Reservation.status == ReservationStatus.PENDING,
            Reservation.payment_status == PaymentStatus.UNPAID,
            ~open_payment,
        )
        .values(
            status=ReservationStatus.CANCELLED,
            cancelled_at=now,
            cancel_reason=reason,
            updated_at=now,
        )
        .returning(Reservation.resource_id, Reservation.venue_id)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is None:
        reservation = await db.get(Reservation, reservation_id, populate_existing=True)
        current_status = reservation.status if reservation is not None else None
        blocking = await db.execute(
            select(PaymentTransaction.id).where(
                PaymentTransaction.reservation_id == reservation_id,
                PaymentTransaction.status.in_((TransactionStatus.PENDING, TransactionStatus.COMPLETED)),
            )
        )
        blocking_ids = list(blocking.scalars().all())
        await db.rollback()
        if current_status is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        if current_status != ReservationStatus.PENDING:
            raise InvalidStateError(
                f"Only pending reservations can be cancelled; reservation {reservation_id} is {current_status}",
                context={"reservation_id": reservation_id, "status": current_status},
            )
        raise InvalidStateError(
            f"Reservation {reservation_id} has payments that are pending or completed; settle them first",
            context={"reservation_id": reservation_id, "transaction_ids": blocking_ids},
        )

    await refresh_resource_flags(db, [row.resource_id], today)
    await db.commit()

    record_release("cancelled")
    logger.info("reservation_cancelled", reservation_id=reservation_id, resource_id=row.resource_id, reason=reason)
    await get_availability_cache().invalidate_venue(row.venue_id)
    return await db.get(Reservation, reservation_id, populate_existing=True)
