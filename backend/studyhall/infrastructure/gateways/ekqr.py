"""
EKQR (UPI QR) gateway.

API:
- POST {base}/create_order       {key, client_txn_id, amount, p_info, customer_*, redirect_url}
- POST {base}/check_order_status {key, client_txn_id, txn_date}

Both answer {"status": true|false, "msg": ..., "data": {...}}; status false
means the call itself was rejected.

Webhook body: {orderId, status: SUCCESS|FAILED|PENDING, amount,
transactionId, timestamp}. orderId is our client_txn_id.
"""

import hmac
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import httpx

from studyhall.core.exceptions import GatewayError
from studyhall.core.logging import get_logger
from studyhall.db.base import utcnow
from studyhall.infrastructure.gateways.base import (
    CreatedPayment,
    GatewayNotification,
    GatewayStatus,
    PaymentCustomer,
    PaymentGateway,
    PaymentState,
)

logger = get_logger(__name__)

SUCCESS_STATES = {"success", "completed", "paid"}
FAILED_STATES = {"failed", "failure", "cancelled", "timeout"}

WEBHOOK_SECRET_HEADER = "X-EKQR-Secret"


def map_state(raw_status: Optional[str], paid: Optional[bool] = None) -> str:
    status = (raw_status or "").strip().lower()
    if status in SUCCESS_STATES or paid is True:
        return PaymentState.SUCCESS
    if status in FAILED_STATES or paid is False:
        return PaymentState.FAILED
    return PaymentState.PENDING


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class EKQRGateway(PaymentGateway):
    def __init__(
        self,
        api_key: str,
        base_url: str,
        redirect_url: str = "",
        webhook_secret: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.api_key = api_key
        self._base_url = base_url.rstrip("/")
        self.redirect_url = redirect_url
        self.webhook_secret = webhook_secret

    @property
    def name(self) -> str:
        return "ekqr"

    @property
    def base_url(self) -> str:
        return self._base_url

    def _unwrap(self, operation: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not body.get("status"):
            raise GatewayError(self.name, f"{operation} rejected: {body.get('msg', 'unknown error')}")
        return body.get("data") or {}

    async def create_payment(
        self,
        amount: Decimal,
        reference: str,
        description: str,
        customer: PaymentCustomer,
    ) -> CreatedPayment:
        body = await self._request(
            "create_order",
            "POST",
            "/create_order",
            json={
                "key": self.api_key,
                "client_txn_id": reference,
                "amount": f"{Decimal(amount):.2f}",
                "p_info": description,
                "customer_name": customer.name or "Guest",
                "customer_email": customer.email or "",
                "customer_mobile": customer.phone or "",
                "redirect_url": self.redirect_url,
            },
        )
        data = self._unwrap("create_order", body)
        logger.info("ekqr_order_created", reference=reference, order_id=data.get("order_id"))
        return CreatedPayment(
            external_reference=reference,
            payment_url=data.get("payment_url"),
            raw=data,
        )

    async def check_status(self, external_reference: str, created_at: Optional[datetime] = None) -> GatewayStatus:
        txn_date = (created_at or utcnow()).date()
        body = await self._request(
            "check_order_status",
            "POST",
            "/check_order_status",
            json={
                "key": self.api_key,
                "client_txn_id": external_reference,
                "txn_date": txn_date.strftime("%d-%m-%Y"),
            },
        )
        data = self._unwrap("check_order_status", body)
        state = map_state(data.get("status"), data.get("paid"))
        return GatewayStatus(
            state=state,
            gateway_payment_id=data.get("upi_txn_id") or data.get("id"),
            amount=_to_decimal(data.get("amount")),
            raw=data,
        )

    def parse_notification(self, body: Dict[str, Any]) -> GatewayNotification:
        reference = body.get("orderId") or body.get("client_txn_id")
        if not reference:
            raise ValueError("EKQR notification without orderId")
        return GatewayNotification(
            reference=str(reference),
            state=map_state(body.get("status")),
            amount=_to_decimal(body.get("amount")),
            gateway_payment_id=body.get("transactionId"),
            timestamp=_parse_timestamp(body.get("timestamp")),
            raw=body,
        )

    def verify_notification(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return True
        supplied = headers.get(WEBHOOK_SECRET_HEADER) or ""
        return hmac.compare_digest(supplied, self.webhook_secret)
