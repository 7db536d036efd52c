"""
Operator endpoints, guarded by the X-Admin-Key header.
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.security import require_admin
from studyhall.db.session import get_db
from studyhall.infrastructure.gateways import GatewayMap, get_gateways
from studyhall.schemas.payment import (
    ManualRecoveryRequest,
    ManualRecoveryResult,
    PendingTransaction,
    RecoverySummary,
)
from studyhall.schemas.reservation import CancelRequest, ReleaseResult, ReservationResponse, VacateRequest
from studyhall.services.expiry_service import release_expired, vacate
from studyhall.services.interfaces.reservation_lock import ReservationLock
from studyhall.services.reconciliation_service import (
    cancel_pending,
    list_pending_transactions,
    manual_recover,
    run_recovery_sweep,
)
from studyhall.services.strategy_factory import get_reservation_lock

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@router.post("/recovery/sweep", response_model=RecoverySummary)
async def trigger_recovery_sweep(
    older_than_minutes: Optional[int] = Query(None, ge=0),
    db: AsyncSession = Depends(get_db),
    lock: ReservationLock = Depends(get_reservation_lock),
    gateways: GatewayMap = Depends(get_gateways),
):
    """Run the payment recovery sweep now instead of waiting for the scheduler."""
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    return await run_recovery_sweep(db, lock, gateways, older_than=older_than)


@router.post("/recovery/manual", response_model=list[ManualRecoveryResult])
async def manual_recovery(
    body: ManualRecoveryRequest,
    db: AsyncSession = Depends(get_db),
    lock: ReservationLock = Depends(get_reservation_lock),
):
    """Confirm payments the operator verified out of band. Does not ask the gateway."""
    return await manual_recover(db, lock, body.transaction_id, body.payment_method)


@router.get("/transactions/pending", response_model=list[PendingTransaction])
async def pending_transactions(
    older_than_minutes: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await list_pending_transactions(db, older_than_minutes)


@router.post("/expiry/release", response_model=ReleaseResult)
async def trigger_expiry(db: AsyncSession = Depends(get_db)):
    return await release_expired(db)


@router.post("/reservations/{reservation_id}/vacate", response_model=ReservationResponse)
async def vacate_reservation(
    reservation_id: int,
    body: VacateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Release an active/confirmed booking before its end date."""
    return await vacate(db, reservation_id, body.reason)


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(
    reservation_id: int,
    body: CancelRequest,
    db: AsyncSession = Depends(get_db),
):
    """Cancel a pending booking whose payment attempts have all failed or never started."""
    return await cancel_pending(db, reservation_id, body.reason)
