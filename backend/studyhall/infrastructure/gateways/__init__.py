"""
Payment gateway clients, keyed by payment method.
The offline method has no gateway; it is settled through manual recovery.
"""

from typing import Dict, Optional

from studyhall.core.config import get_settings
from studyhall.infrastructure.gateways.base import (
    CreatedPayment,
    GatewayNotification,
    GatewayStatus,
    PaymentCustomer,
    PaymentGateway,
    PaymentState,
)
from studyhall.infrastructure.gateways.ekqr import EKQRGateway
from studyhall.infrastructure.gateways.razorpay import RazorpayGateway

GatewayMap = Dict[str, PaymentGateway]

_gateways: Optional[GatewayMap] = None


def build_gateways() -> GatewayMap:
    settings = get_settings()
    return {
        "ekqr": EKQRGateway(
            api_key=settings.EKQR_API_KEY,
            base_url=settings.EKQR_BASE_URL,
            redirect_url=settings.EKQR_REDIRECT_URL,
            webhook_secret=settings.EKQR_WEBHOOK_SECRET,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        ),
        "razorpay": RazorpayGateway(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            base_url=settings.RAZORPAY_BASE_URL,
            currency=settings.PAYMENT_CURRENCY,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        ),
    }


def get_gateways() -> GatewayMap:
    """Gateway singleton map (also used as a FastAPI dependency)."""
    global _gateways
    if _gateways is None:
        _gateways = build_gateways()
    return _gateways


async def close_gateways() -> None:
    global _gateways
    if _gateways is not None:
        for gateway in _gateways.values():
            await gateway.close()
        _gateways = None


__all__ = [
    'CreatedPayment',
    'EKQRGateway',
    'GatewayMap',
    'GatewayNotification',
    'GatewayStatus',
    'PaymentCustomer',
    'PaymentGateway',
    'PaymentState',
    'RazorpayGateway',
    'build_gateways',
    'close_gateways',
    'get_gateways',
]
