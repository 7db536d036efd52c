"""
Razorpay (hosted checkout) gateway.

- Orders API with HTTP Basic auth (key id / key secret), amounts in paise
- Checkout callback signature: HMAC-SHA256("{order_id}|{payment_id}", key_secret)
- Webhook signature: HMAC-SHA256(raw body, webhook_secret) in X-Razorpay-Signature

A failed payment attempt does not fail the order: the customer can try
again on the same checkout. Only order.paid / payment.captured are terminal.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from studyhall.core.logging import get_logger
from studyhall.infrastructure.gateways.base import (
    CreatedPayment,
    GatewayNotification,
    GatewayStatus,
    PaymentCustomer,
    PaymentGateway,
    PaymentState,
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"
MAX_RECEIPT_LENGTH = 40
SUCCESS_EVENTS = {"payment.captured", "order.paid"}


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def to_paise(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def from_paise(paise: Optional[int]) -> Optional[Decimal]:
    if paise is None:
        return None
    return (Decimal(paise) / 100).quantize(Decimal("0.01"))


class RazorpayGateway(PaymentGateway):
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        base_url: str = "https://api.razorpay.com/v1",
        currency: str = "INR",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.currency = currency
        self._base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return "razorpay"

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def auth(self) -> Optional[httpx.Auth]:
        return httpx.BasicAuth(self.key_id, self.key_secret)

    async def create_payment(
        self,
        amount: Decimal,
        reference: str,
        description: str,
        customer: PaymentCustomer,
    ) -> CreatedPayment:
        order = await self._request(
            "create_order",
            "POST",
            "/orders",
            json={
                "amount": to_paise(amount),
                "currency": self.currency,
                "receipt": reference[:MAX_RECEIPT_LENGTH],
                "payment_capture": 1,
                "notes": {"reference": reference, "purpose": description},
            },
        )
        logger.info("razorpay_order_created", reference=reference, order_id=order.get("id"))
        return CreatedPayment(external_reference=order["id"], gateway_key=self.key_id, raw=order)

    async def check_status(self, external_reference: str, created_at: Optional[datetime] = None) -> GatewayStatus:
        order = await self._request("fetch_order", "GET", f"/orders/{external_reference}")
        state = PaymentState.SUCCESS if order.get("status") == "paid" else PaymentState.PENDING
        return GatewayStatus(state=state, amount=from_paise(order.get("amount_paid")), raw=order)

    def parse_notification(self, body: Dict[str, Any]) -> GatewayNotification:
        event = body.get("event", "")
        payload = body.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        order = (payload.get("order") or {}).get("entity") or {}

        reference = payment.get("order_id") or order.get("id")
        if not reference:
            raise ValueError(f"Razorpay event {event!r} without an order id")

        created_at = body.get("created_at")
        return GatewayNotification(
            reference=reference,
            state=PaymentState.SUCCESS if event in SUCCESS_EVENTS else PaymentState.PENDING,
            amount=from_paise(payment.get("amount", order.get("amount_paid"))),
            gateway_payment_id=payment.get("id"),
            timestamp=datetime.fromtimestamp(created_at, tz=timezone.utc) if created_at else None,
            raw=body,
        )

    def verify_notification(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return True
        supplied = headers.get(SIGNATURE_HEADER) or ""
        return hmac.compare_digest(_hmac_hex(self.webhook_secret, raw_body), supplied)

    def verify_checkout_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = _hmac_hex(self.key_secret, f"{order_id}|{payment_id}".encode())
        return hmac.compare_digest(expected, signature)
