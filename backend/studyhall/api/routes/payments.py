"""
Payment status and hosted-checkout verification.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.db.session import get_db
from studyhall.infrastructure.gateways import GatewayMap, get_gateways
from studyhall.schemas.payment import FinalizeResult, RazorpayVerifyRequest, TransactionResponse
from studyhall.services.interfaces.reservation_lock import ReservationLock
from studyhall.services.reconciliation_service import verify_checkout
from studyhall.services.reservation_service import get_transaction
from studyhall.services.strategy_factory import get_reservation_lock

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def read_transaction(transaction_id: int, db: AsyncSession = Depends(get_db)):
    """Clients poll this after paying; status flips once the payment is reconciled."""
    return await get_transaction(db, transaction_id)


@router.post("/razorpay/verify", response_model=FinalizeResult)
async def verify_razorpay_checkout(
    body: RazorpayVerifyRequest,
    db: AsyncSession = Depends(get_db),
    lock: ReservationLock = Depends(get_reservation_lock),
    gateways: GatewayMap = Depends(get_gateways),
):
    """Razorpay checkout handler callback. 400 on a bad signature."""
    return await verify_checkout(
        db,
        lock,
        gateways["razorpay"],
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.razorpay_signature,
    )
