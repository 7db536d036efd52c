"""
Gateway webhooks.

Any processed notification answers 200 with the outcome in the body,
including duplicates, unknown references and amount mismatches: a retry
would not change them. Only a bad signature (401) and an unreachable
database (503) answer otherwise, so the gateway retries what is transient.
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from studyhall.core.exceptions import AvailabilityLookupError, LockUnavailableError
from studyhall.core.logging import get_logger
from studyhall.core.metrics import record_reconciliation
from studyhall.db.session import get_db
from studyhall.infrastructure.gateways import GatewayMap, get_gateways
from studyhall.models.transaction import PaymentMethod
from studyhall.schemas.payment import WebhookResult
from studyhall.services.interfaces.reservation_lock import ReservationLock
from studyhall.services.reconciliation_service import handle_notification
from studyhall.services.strategy_factory import get_reservation_lock

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _process(
    payment_method: str,
    request: Request,
    db: AsyncSession,
    lock: ReservationLock,
    gateways: GatewayMap,
) -> WebhookResult:
    gateway = gateways[payment_method]
    raw_body = await request.body()

    if not gateway.verify_notification(raw_body, request.headers):
        record_reconciliation("webhook", "invalid_signature")
        logger.warning("webhook_invalid_signature", gateway=payment_method)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        notification = gateway.parse_notification(json.loads(raw_body))
    except (ValueError, AttributeError) as e:
        logger.warning("webhook_unparseable", gateway=payment_method, error=str(e))
        return WebhookResult(status="error", message=f"Unparseable notification: {e}")

    logger.info(
        "webhook_received",
        gateway=payment_method,
        reference=notification.reference,
        state=notification.state,
    )
    try:
        return await handle_notification(db, lock, payment_method, notification)
    except LockUnavailableError:
        return WebhookResult(status="no_action", message="Payment is being processed")
    except (OperationalError, InterfaceError, AvailabilityLookupError) as e:
        logger.error("webhook_database_unavailable", gateway=payment_method, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Temporarily unavailable")


@router.post("/ekqr", response_model=WebhookResult)
async def ekqr_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    lock: ReservationLock = Depends(get_reservation_lock),
    gateways: GatewayMap = Depends(get_gateways),
):
    return await _process(PaymentMethod.EKQR, request, db, lock, gateways)


@router.post("/razorpay", response_model=WebhookResult)
async def razorpay_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    lock: ReservationLock = Depends(get_reservation_lock),
    gateways: GatewayMap = Depends(get_gateways),
):
    return await _process(PaymentMethod.RAZORPAY, request, db, lock, gateways)
