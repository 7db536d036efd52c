"""
Base Payment Gateway
====================

Abstract base class for payment provider clients. Each gateway turns the
provider's HTTP API into three calls the reconciliation pipeline relies on:

- create_payment: open an order / QR for an amount
- check_status: poll the provider's ground truth for one order
- parse_notification: read a webhook body into a GatewayNotification

Transport failures, timeouts and non-2xx answers are all raised as
GatewayError. Callers treat them as "unknown" and retry on a later sweep.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from studyhall.core.exceptions import GatewayError
from studyhall.core.logging import get_logger
from studyhall.core.metrics import gateway_latency, record_gateway_call

logger = get_logger(__name__)


class PaymentState:
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class PaymentCustomer:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class CreatedPayment:
    """A payment opened at the provider."""
    external_reference: str
    payment_url: Optional[str] = None
    gateway_key: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayStatus:
    """Provider's answer to a status poll."""
    state: str
    gateway_payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayNotification:
    """Standardized webhook notification from any gateway."""
    reference: str
    state: str
    amount: Optional[Decimal] = None
    gateway_payment_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """
    Abstract base class for payment gateway clients.

    Adapters handle:
    - Provider-specific request/response formats
    - Error translation into GatewayError
    - Webhook authenticity checks
    """

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            timeout: HTTP request timeout in seconds
            transport: optional httpx transport (tests pass httpx.MockTransport)
        """
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Payment method this gateway serves (ekqr, razorpay)."""
        pass

    @property
    @abstractmethod
    def base_url(self) -> str:
        pass

    @property
    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    @property
    def auth(self) -> Optional[httpx.Auth]:
        return None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                auth=self.auth,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Send one request and return the decoded JSON body."""
        client = await self.get_client()
        started = time.perf_counter()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            record_gateway_call(self.name, operation, ok=False)
            logger.warning("gateway_timeout", gateway=self.name, operation=operation, error=str(e))
            raise GatewayError(self.name, f"{operation} timed out")
        except httpx.HTTPError as e:
            record_gateway_call(self.name, operation, ok=False)
            logger.warning("gateway_unreachable", gateway=self.name, operation=operation, error=str(e))
            raise GatewayError(self.name, f"{operation} failed: {e}")
        finally:
            gateway_latency.labels(gateway=self.name).observe(time.perf_counter() - started)

        if response.status_code >= 400:
            record_gateway_call(self.name, operation, ok=False)
            logger.warning(
                "gateway_error_response",
                gateway=self.name,
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayError(
                self.name,
                f"{operation} returned {response.status_code}",
                upstream_status=response.status_code,
                response_body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            record_gateway_call(self.name, operation, ok=False)
            raise GatewayError(self.name, f"{operation} returned a non-JSON body", response_body=response.text)

        record_gateway_call(self.name, operation, ok=True)
        return data

    # =========================================================================
    # ABSTRACT METHODS - Must be implemented by each gateway
    # =========================================================================

    @abstractmethod
    async def create_payment(
        self,
        amount: Decimal,
        reference: str,
        description: str,
        customer: PaymentCustomer,
    ) -> CreatedPayment:
        """
        Open a payment at the provider.

        Args:
            amount: amount in rupees
            reference: our id for the payment, unique per transaction
            description: shown to the payer
            customer: payer contact details
        """
        pass

    @abstractmethod
    async def check_status(self, external_reference: str, created_at: Optional[datetime] = None) -> GatewayStatus:
        """Poll the provider for the current state of one payment."""
        pass

    @abstractmethod
    def parse_notification(self, body: Dict[str, Any]) -> GatewayNotification:
        """
        Map a webhook body to a GatewayNotification.

        Raises:
            ValueError: the body does not carry a payment reference
        """
        pass

    def verify_notification(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Check a webhook's authenticity. Gateways without a configured secret accept all."""
        return True
