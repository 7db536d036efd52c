"""
Tests for the payment reconciliation pipeline: finalize, webhooks as
notifications, the recovery sweep and manual recovery.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from studyhall.core.exceptions import InconsistencyError, InvalidStateError, NotFoundError, PaymentVerificationError
from studyhall.db.base import utcnow
from studyhall.infrastructure.gateways import GatewayNotification, PaymentState
from studyhall.infrastructure.gateways.razorpay import _hmac_hex
from studyhall.models.booking_event import BookingEvent
from studyhall.models.reservation import Reservation
from studyhall.models.transaction import PaymentTransaction
from studyhall.models.venue import Resource
from studyhall.schemas.payment import ReservationIntent
from studyhall.schemas.reservation import Holder
from studyhall.services.availability_service import is_range_free
from studyhall.services.interfaces.local_lock import LocalReservationLock
from studyhall.services.interfaces.reservation_lock import transaction_lock_key
from studyhall.services.payment_service import start_payment
from studyhall.services.reconciliation_service import (
    cancel_pending,
    finalize,
    handle_notification,
    list_pending_transactions,
    manual_recover,
    mark_failed,
    run_recovery_sweep,
    status_for_start,
    verify_checkout,
)
from studyhall.services.reservation_service import reserve

from conftest import RAZORPAY_KEY_SECRET, add_reservation, reload, transaction_by_id


async def pending_booking(db, lock, gateways, seat, start, end, method="ekqr"):
    """Reservation-first flow: pending reservation + transaction with a gateway reference."""
    reservation, transaction = await reserve(
        db,
        lock,
        resource_id=seat.id,
        venue_id=seat.venue_id,
        start_date=start,
        end_date=end,
        holder=Holder.registered("user-1"),
        amount=Decimal("300.00"),
        period="daily",
        payment_method=method,
    )
    await start_payment(db, gateways, transaction)
    return reservation.id, transaction.id, transaction.external_reference


async def checkout_transaction(db, seat, start, end, method="ekqr", reference="SHQR-1", payment_data=None):
    """Payment-first flow: transaction carrying only the reservation intent."""
    intent = ReservationIntent(
        resource_id=seat.id,
        venue_id=seat.venue_id,
        start_date=start,
        end_date=end,
        amount=Decimal("300.00"),
        booking_period="daily",
        holder=Holder.guest("Ravi", "9123456789"),
    )
    transaction = PaymentTransaction(
        reservation_id=None,
        amount=Decimal("300.00"),
        payment_method=method,
        external_reference=reference,
        status="pending",
        payment_data=payment_data if payment_data is not None else {
            "intent": intent.to_payment_data(),
            "flow": "payment_first",
        },
    )
    db.add(transaction)
    await db.commit()
    return transaction.id


async def age(db, transaction_id, minutes=15):
    await db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.id == transaction_id)
        .values(created_at=utcnow() - timedelta(minutes=minutes))
    )
    await db.commit()


async def event_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(BookingEvent))).scalar_one()


def test_status_for_start():
    today = date(2024, 5, 10)
    assert status_for_start(date(2024, 5, 10), today) == "active"
    assert status_for_start(date(2024, 5, 1), today) == "active"
    assert status_for_start(date(2024, 5, 11), today) == "confirmed"


# ---------------------------------------------------------------------------
# finalize / mark_failed
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_finalize_linked_reservation(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, _ = await pending_booking(
        db_session, lock, gateways, seat, future, future + timedelta(days=2)
    )

    result = await finalize(db_session, lock, transaction_id, source="webhook", gateway_details={"gateway_payment_id": "UPI-1"})

    assert result.outcome == "completed"
    assert result.reservation_id == reservation_id

    reservation = await reload(db_session, Reservation, reservation_id)
    assert reservation.status == "confirmed"
    assert reservation.payment_status == "paid"

    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.status == "completed"
    assert transaction.completed_at is not None
    assert transaction.gateway_payment_id == "UPI-1"
    assert transaction.payment_data["reconciled_by"] == "webhook"

    event = (await db_session.execute(select(BookingEvent))).scalar_one()
    assert event.event_type == "booking_confirmed"
    assert event.reservation_id == reservation_id
    assert event.transaction_id == transaction_id
    assert event.payload["source"] == "webhook"


@pytest.mark.asyncio
async def test_finalize_booking_starting_today_is_active(db_session, lock, gateways, seat):
    today = date.today()
    reservation_id, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, today, today)

    await finalize(db_session, lock, transaction_id, source="manual")

    reservation = await reload(db_session, Reservation, reservation_id)
    assert reservation.status == "active"


@pytest.mark.asyncio
async def test_finalize_is_idempotent(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)

    first = await finalize(db_session, lock, transaction_id, source="webhook")
    second = await finalize(db_session, lock, transaction_id, source="recovery_sweep")

    assert first.outcome == "completed"
    assert second.outcome == "already_completed"
    assert second.reservation_id == reservation_id
    assert await event_count(db_session) == 1

    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.payment_data["reconciled_by"] == "webhook"


@pytest.mark.asyncio
async def test_concurrent_finalize_applies_once(session_factory, db_session, lock, gateways, seat, future):
    _, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)

    async def attempt(source):
        async with session_factory() as session:
            return await finalize(session, lock, transaction_id, source=source)

    results = await asyncio.gather(attempt("webhook"), attempt("recovery_sweep"))

    assert sorted(r.outcome for r in results) == ["already_completed", "completed"]
    assert await event_count(db_session) == 1


@pytest.mark.asyncio
async def test_finalize_creates_reservation_from_intent(db_session, lock, seat, future):
    transaction_id = await checkout_transaction(db_session, seat, future, future + timedelta(days=2))

    result = await finalize(db_session, lock, transaction_id, source="webhook")

    assert result.outcome == "completed"
    reservation = await reload(db_session, Reservation, result.reservation_id)
    assert reservation.resource_id == seat.id
    assert reservation.guest_name == "Ravi"
    assert reservation.status == "confirmed"
    assert reservation.payment_status == "paid"

    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.reservation_id == reservation.id
    assert transaction.status == "completed"


@pytest.mark.asyncio
async def test_finalize_intent_seat_taken_meanwhile(db_session, lock, seat, future):
    seat_id = seat.id
    transaction_id = await checkout_transaction(db_session, seat, future, future + timedelta(days=2))
    taken = await add_reservation(db_session, seat, future + timedelta(days=1), future + timedelta(days=1))
    taken_id = taken.id

    with pytest.raises(InconsistencyError) as exc_info:
        await finalize(db_session, lock, transaction_id, source="webhook")

    assert str(taken_id) in exc_info.value.reason
    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.status == "pending"
    assert transaction.reservation_id is None
    error = transaction.payment_data["reconciliation_error"]
    assert error["source"] == "webhook"
    assert "taken" in error["reason"]
    # The intent is still there for the operator
    assert transaction.payment_data["intent"]["resource_id"] == seat_id
    assert await event_count(db_session) == 0


@pytest.mark.asyncio
async def test_finalize_without_intent_is_inconsistent(db_session, lock, seat, future):
    transaction_id = await checkout_transaction(db_session, seat, future, future, payment_data={})

    with pytest.raises(InconsistencyError):
        await finalize(db_session, lock, transaction_id, source="manual")

    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.status == "pending"
    assert "reconciliation_error" in transaction.payment_data


@pytest.mark.asyncio
async def test_finalize_cancelled_reservation_is_inconsistent(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)
    await db_session.execute(
        update(Reservation).where(Reservation.id == reservation_id).values(status="cancelled")
    )
    await db_session.commit()

    with pytest.raises(InconsistencyError):
        await finalize(db_session, lock, transaction_id, source="webhook")

    reservation = await reload(db_session, Reservation, reservation_id)
    assert reservation.status == "cancelled"
    assert (await transaction_by_id(db_session, transaction_id)).status == "pending"


@pytest.mark.asyncio
async def test_finalize_unknown_transaction(db_session, lock):
    with pytest.raises(NotFoundError):
        await finalize(db_session, lock, 4242, source="manual")


@pytest.mark.asyncio
async def test_mark_failed_then_finalize(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)

    failed = await mark_failed(db_session, lock, transaction_id, source="webhook", reason="declined")
    late_success = await finalize(db_session, lock, transaction_id, source="recovery_sweep")

    assert failed.outcome == "failed"
    assert late_success.outcome == "already_failed"

    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.status == "failed"
    assert transaction.payment_data["failure_reason"] == "declined"
    # Reservation stays pending so the holder can retry the payment
    reservation = await reload(db_session, Reservation, reservation_id)
    assert reservation.status == "pending"


@pytest.mark.asyncio
async def test_mark_failed_after_completion_is_noop(db_session, lock, gateways, seat, future):
    _, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)
    await finalize(db_session, lock, transaction_id, source="webhook")

    result = await mark_failed(db_session, lock, transaction_id, source="recovery_sweep", reason="late failure")

    assert result.outcome == "already_completed"
    assert (await transaction_by_id(db_session, transaction_id)).status == "completed"


async def second_attempt(db, reservation_id, method="razorpay", reference="order_9001"):
    """Another pending transaction for the same reservation, already handed to a gateway."""
    transaction = PaymentTransaction(
        reservation_id=reservation_id,
        user_id="user-1",
        amount=Decimal("300.00"),
        payment_method=method,
        external_reference=reference,
        status="pending",
        payment_data={},
    )
    db.add(transaction)
    await db.commit()
    return transaction.id


@pytest.mark.asyncio
async def test_second_paid_attempt_is_flagged_for_refund(db_session, lock, gateways, seat, future):
    reservation_id, first_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)
    second_id = await second_attempt(db_session, reservation_id)

    await finalize(db_session, lock, first_id, source="webhook")
    with pytest.raises(InconsistencyError) as exc_info:
        await finalize(db_session, lock, second_id, source="recovery_sweep")

    assert exc_info.value.refund_required is True
    assert str(first_id) in exc_info.value.reason
    second = await transaction_by_id(db_session, second_id)
    assert second.status == "pending"
    assert second.payment_data["reconciliation_error"]["refund_required"] is True
    assert (await transaction_by_id(db_session, first_id)).status == "completed"
    assert await event_count(db_session) == 1


@pytest.mark.asyncio
async def test_concurrent_paid_attempts_confirm_once(session_factory, db_session, lock, gateways, seat, future):
    reservation_id, first_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)
    second_id = await second_attempt(db_session, reservation_id)

    async def attempt(transaction_id, source):
        async with session_factory() as session:
            return await finalize(session, lock, transaction_id, source=source)

    results = await asyncio.gather(
        attempt(first_id, "webhook"), attempt(second_id, "webhook"), return_exceptions=True
    )

    assert sum(1 for r in results if isinstance(r, InconsistencyError)) == 1
    assert [r.outcome for r in results if not isinstance(r, Exception)] == ["completed"]
    assert await event_count(db_session) == 1
    completed = await db_session.execute(
        select(func.count()).select_from(PaymentTransaction).where(PaymentTransaction.status == "completed")
    )
    assert completed.scalar_one() == 1


# ---------------------------------------------------------------------------
# handle_notification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_notification_success_and_duplicate(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, reference = await pending_booking(db_session, lock, gateways, seat, future, future)
    notification = GatewayNotification(
        reference=reference, state=PaymentState.SUCCESS, amount=Decimal("300.00"), gateway_payment_id="UPI-7"
    )

    first = await handle_notification(db_session, lock, "ekqr", notification)
    second = await handle_notification(db_session, lock, "ekqr", notification)

    assert first.status == "completed"
    assert first.reservation_id == reservation_id
    assert second.status == "already_completed"
    assert await event_count(db_session) == 1


@pytest.mark.asyncio
async def test_notification_unknown_reference(db_session, lock):
    result = await handle_notification(
        db_session, lock, "ekqr", GatewayNotification(reference="nope", state=PaymentState.SUCCESS)
    )
    assert result.status == "unknown_reference"


@pytest.mark.asyncio
async def test_notification_reference_of_other_gateway(db_session, lock, gateways, seat, future):
    _, _, reference = await pending_booking(db_session, lock, gateways, seat, future, future)

    result = await handle_notification(
        db_session, lock, "razorpay", GatewayNotification(reference=reference, state=PaymentState.SUCCESS)
    )
    assert result.status == "unknown_reference"


@pytest.mark.asyncio
async def test_notification_pending_is_no_action(db_session, lock, gateways, seat, future):
    _, transaction_id, reference = await pending_booking(db_session, lock, gateways, seat, future, future)

    result = await handle_notification(
        db_session, lock, "ekqr", GatewayNotification(reference=reference, state=PaymentState.PENDING)
    )

    assert result.status == "no_action"
    assert (await transaction_by_id(db_session, transaction_id)).status == "pending"


@pytest.mark.asyncio
async def test_notification_failure(db_session, lock, gateways, seat, future):
    _, transaction_id, reference = await pending_booking(db_session, lock, gateways, seat, future, future)

    result = await handle_notification(
        db_session, lock, "ekqr", GatewayNotification(reference=reference, state=PaymentState.FAILED)
    )

    assert result.status == "failed"
    assert (await transaction_by_id(db_session, transaction_id)).status == "failed"


@pytest.mark.asyncio
async def test_notification_amount_mismatch_stays_pending(db_session, lock, gateways, seat, future):
    _, transaction_id, reference = await pending_booking(db_session, lock, gateways, seat, future, future)

    result = await handle_notification(
        db_session,
        lock,
        "ekqr",
        GatewayNotification(reference=reference, state=PaymentState.SUCCESS, amount=Decimal("1.00")),
    )

    assert result.status == "amount_mismatch"
    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.status == "pending"
    assert transaction.payment_data["amount_mismatch"] == {"expected": "300.00", "received": "1.00"}


@pytest.mark.asyncio
async def test_notification_inconsistent_is_reported(db_session, lock, seat, future):
    transaction_id = await checkout_transaction(db_session, seat, future, future, reference="SHQR-9")
    await add_reservation(db_session, seat, future, future)

    result = await handle_notification(
        db_session, lock, "ekqr", GatewayNotification(reference="SHQR-9", state=PaymentState.SUCCESS)
    )

    assert result.status == "inconsistent"
    assert result.transaction_id == transaction_id


# ---------------------------------------------------------------------------
# Recovery sweep
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sweep_recovers_paid_transactions(db_session, lock, gateways, ekqr_stub, seat, future):
    reservation_id, transaction_id, reference = await pending_booking(db_session, lock, gateways, seat, future, future)
    await age(db_session, transaction_id)
    ekqr_stub.statuses[reference] = "success"

    summary = await run_recovery_sweep(db_session, lock, gateways)

    assert summary.checked == 1
    assert summary.recovered == 1
    assert summary.still_pending == 0
    reservation = await reload(db_session, Reservation, reservation_id)
    assert reservation.payment_status == "paid"

    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.payment_data["reconciled_by"] == "recovery_sweep"
    assert transaction.gateway_payment_id == "UPI-42"

    # Converged: nothing left for the next run
    again = await run_recovery_sweep(db_session, lock, gateways)
    assert again.checked == 0


@pytest.mark.asyncio
async def test_sweep_sends_creation_date_to_ekqr(db_session, lock, gateways, ekqr_stub, seat, future):
    _, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)
    await age(db_session, transaction_id)

    await run_recovery_sweep(db_session, lock, gateways)

    created = (utcnow() - timedelta(minutes=15)).date()
    assert ekqr_stub.status_checks[0]["txn_date"] == created.strftime("%d-%m-%Y")


@pytest.mark.asyncio
async def test_sweep_skips_young_transactions(db_session, lock, gateways, ekqr_stub, seat, future):
    _, _, reference = await pending_booking(db_session, lock, gateways, seat, future, future)
    ekqr_stub.statuses[reference] = "success"

    summary = await run_recovery_sweep(db_session, lock, gateways)

    assert summary.checked == 0
    assert ekqr_stub.status_checks == []


@pytest.mark.asyncio
async def test_sweep_leaves_gateway_errors_pending(db_session, lock, gateways, ekqr_stub, seat, future):
    _, transaction_id, reference = await pending_booking(db_session, lock, gateways, seat, future, future)
    await age(db_session, transaction_id)
    ekqr_stub.statuses[reference] = "error"

    summary = await run_recovery_sweep(db_session, lock, gateways)

    assert summary.still_pending == 1
    assert summary.failed == 0
    assert len(summary.errors) == 1
    assert (await transaction_by_id(db_session, transaction_id)).status == "pending"


@pytest.mark.asyncio
async def test_sweep_marks_gateway_failures(db_session, lock, gateways, ekqr_stub, seat, future):
    _, transaction_id, reference = await pending_booking(db_session, lock, gateways, seat, future, future)
    await age(db_session, transaction_id)
    ekqr_stub.statuses[reference] = "FAILED"

    summary = await run_recovery_sweep(db_session, lock, gateways)

    assert summary.failed == 1
    assert (await transaction_by_id(db_session, transaction_id)).status == "failed"


@pytest.mark.asyncio
async def test_sweep_skips_failure_when_transaction_is_busy(db_session, gateways, ekqr_stub, seats, future):
    lock = LocalReservationLock(blocking_timeout=0.05)
    _, busy_id, busy_ref = await pending_booking(db_session, lock, gateways, seats[0], future, future)
    _, free_id, free_ref = await pending_booking(db_session, lock, gateways, seats[1], future, future)
    await age(db_session, busy_id, minutes=20)
    await age(db_session, free_id)
    ekqr_stub.statuses[busy_ref] = "FAILED"
    ekqr_stub.statuses[free_ref] = "FAILED"

    # A webhook is still working on the first transaction
    async with lock.hold(transaction_lock_key(busy_id)):
        summary = await run_recovery_sweep(db_session, lock, gateways)

    assert summary.checked == 2
    assert summary.still_pending == 1
    assert summary.failed == 1
    assert str(busy_id) in summary.errors[0]
    assert (await transaction_by_id(db_session, busy_id)).status == "pending"
    assert (await transaction_by_id(db_session, free_id)).status == "failed"


@pytest.mark.asyncio
async def test_sweep_still_pending_at_gateway(db_session, lock, gateways, seat, future):
    _, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)
    await age(db_session, transaction_id)

    summary = await run_recovery_sweep(db_session, lock, gateways)

    assert summary.checked == 1
    assert summary.still_pending == 1
    assert summary.errors == []


@pytest.mark.asyncio
async def test_sweep_razorpay_paid_order(db_session, lock, gateways, razorpay_stub, seat, future):
    reservation_id, transaction_id, order_id = await pending_booking(
        db_session, lock, gateways, seat, future, future, method="razorpay"
    )
    await age(db_session, transaction_id)
    razorpay_stub.order_status[order_id] = "paid"

    summary = await run_recovery_sweep(db_session, lock, gateways)

    assert summary.recovered == 1
    assert (await reload(db_session, Reservation, reservation_id)).payment_status == "paid"


@pytest.mark.asyncio
async def test_sweep_ignores_offline_transactions(db_session, lock, gateways, seat, future):
    _, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future, method="offline")
    await age(db_session, transaction_id)

    summary = await run_recovery_sweep(db_session, lock, gateways)
    assert summary.checked == 0


@pytest.mark.asyncio
async def test_sweep_keeps_inconsistent_intent_pending(db_session, lock, gateways, ekqr_stub, seat, future):
    transaction_id = await checkout_transaction(db_session, seat, future, future, reference="SHQR-5")
    await add_reservation(db_session, seat, future, future)
    await age(db_session, transaction_id)
    ekqr_stub.statuses["SHQR-5"] = "success"

    summary = await run_recovery_sweep(db_session, lock, gateways)

    assert summary.still_pending == 1
    assert summary.recovered == 0
    assert "taken" in summary.errors[0]


# ---------------------------------------------------------------------------
# Manual recovery and checkout verification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_manual_recover_single(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, _ = await pending_booking(
        db_session, lock, gateways, seat, future, future, method="offline"
    )

    results = await manual_recover(db_session, lock, transaction_id)

    assert len(results) == 1
    assert results[0].success is True
    assert results[0].reservation_id == reservation_id
    transaction = await transaction_by_id(db_session, transaction_id)
    assert transaction.payment_data["reconciled_by"] == "manual"


@pytest.mark.asyncio
async def test_manual_recover_all(db_session, lock, gateways, seats, future):
    first = await pending_booking(db_session, lock, gateways, seats[0], future, future)
    second = await pending_booking(db_session, lock, gateways, seats[1], future, future, method="razorpay")
    offline = await pending_booking(db_session, lock, gateways, seats[2], future, future, method="offline")

    results = await manual_recover(db_session, lock, "all")

    assert {r.transaction_id for r in results} == {first[1], second[1], offline[1]}
    assert all(r.success for r in results)
    assert (await transaction_by_id(db_session, offline[1])).status == "completed"


@pytest.mark.asyncio
async def test_manual_recover_all_for_one_payment_method(db_session, lock, gateways, seats, future):
    gateway_paid = await pending_booking(db_session, lock, gateways, seats[0], future, future)
    desk_paid = await pending_booking(db_session, lock, gateways, seats[1], future, future, method="offline")

    results = await manual_recover(db_session, lock, "all", payment_method="offline")

    assert [r.transaction_id for r in results] == [desk_paid[1]]
    assert (await transaction_by_id(db_session, desk_paid[1])).status == "completed"
    assert (await transaction_by_id(db_session, gateway_paid[1])).status == "pending"


@pytest.mark.asyncio
async def test_manual_recover_reports_failures(db_session, lock, seat, future):
    transaction_id = await checkout_transaction(db_session, seat, future, future, payment_data={})

    results = await manual_recover(db_session, lock, transaction_id)
    assert results[0].success is False
    assert "intent" in results[0].error

    missing = await manual_recover(db_session, lock, 4242)
    assert missing[0].success is False


@pytest.mark.asyncio
async def test_verify_checkout(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, order_id = await pending_booking(
        db_session, lock, gateways, seat, future, future, method="razorpay"
    )
    signature = _hmac_hex(RAZORPAY_KEY_SECRET, f"{order_id}|pay_001".encode())

    result = await verify_checkout(db_session, lock, gateways["razorpay"], order_id, "pay_001", signature)

    assert result.outcome == "completed"
    assert result.reservation_id == reservation_id
    assert (await transaction_by_id(db_session, transaction_id)).gateway_payment_id == "pay_001"


@pytest.mark.asyncio
async def test_verify_checkout_bad_signature(db_session, lock, gateways, seat, future):
    _, transaction_id, order_id = await pending_booking(
        db_session, lock, gateways, seat, future, future, method="razorpay"
    )

    with pytest.raises(PaymentVerificationError):
        await verify_checkout(db_session, lock, gateways["razorpay"], order_id, "pay_001", "forged")

    assert (await transaction_by_id(db_session, transaction_id)).status == "pending"


@pytest.mark.asyncio
async def test_list_pending_transactions(db_session, lock, gateways, seats, future):
    _, old_id, _ = await pending_booking(db_session, lock, gateways, seats[0], future, future)
    _, new_id, _ = await pending_booking(db_session, lock, gateways, seats[1], future, future)
    _, done_id, _ = await pending_booking(db_session, lock, gateways, seats[2], future, future)
    await age(db_session, old_id, minutes=30)
    await finalize(db_session, lock, done_id, source="manual")

    everything = await list_pending_transactions(db_session)
    assert [t.id for t in everything] == [old_id, new_id]

    stale = await list_pending_transactions(db_session, older_than_minutes=10)
    assert [t.id for t in stale] == [old_id]


# ---------------------------------------------------------------------------
# Operator cancel
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_pending_after_failed_payment(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)
    await mark_failed(db_session, lock, transaction_id, source="webhook", reason="declined")

    cancelled = await cancel_pending(db_session, reservation_id, "Guest never paid")

    assert cancelled.status == "cancelled"
    assert cancelled.cancel_reason == "Guest never paid"
    assert cancelled.cancelled_at is not None
    assert (await reload(db_session, Resource, seat.id)).is_available is True
    assert (await is_range_free(db_session, seat.id, future, future)).free is True

    # A late success for the failed attempt does not revive the booking
    late = await finalize(db_session, lock, transaction_id, source="recovery_sweep")
    assert late.outcome == "already_failed"
    assert (await reload(db_session, Reservation, reservation_id)).status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_pending_refused_while_payment_pending(db_session, lock, gateways, seat, future):
    reservation_id, transaction_id, _ = await pending_booking(db_session, lock, gateways, seat, future, future)

    with pytest.raises(InvalidStateError) as exc_info:
        await cancel_pending(db_session, reservation_id, "Stuck")

    assert exc_info.value.context["transaction_ids"] == [transaction_id]
    assert (await reload(db_session, Reservation, reservation_id)).status == "pending"

    # The payment can still settle the booking
    result = await finalize(db_session, lock, transaction_id, source="webhook")
    assert result.outcome == "completed"


@pytest.mark.asyncio
async def test_cancel_pending_refused_for_paid_booking(db_session, seat, future):
    reservation = await add_reservation(db_session, seat, future, future, status="confirmed")
    reservation_id = reservation.id

    with pytest.raises(InvalidStateError):
        await cancel_pending(db_session, reservation_id, "Changed plans")

    assert (await reload(db_session, Reservation, reservation_id)).status == "confirmed"


@pytest.mark.asyncio
async def test_cancel_pending_without_any_payment(db_session, seat, future):
    reservation = await add_reservation(db_session, seat, future, future, status="pending")
    reservation_id = reservation.id

    first = await cancel_pending(db_session, reservation_id, "Abandoned")
    assert first.status == "cancelled"

    with pytest.raises(InvalidStateError):
        await cancel_pending(db_session, reservation_id, "Abandoned again")


@pytest.mark.asyncio
async def test_cancel_pending_unknown_reservation(db_session):
    with pytest.raises(NotFoundError):
        await cancel_pending(db_session, 4242, "gone")
