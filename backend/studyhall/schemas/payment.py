"""
Pydantic schemas for payments, the stored reservation intent, and the
reconciliation entry points.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional, Union
from pydantic import BaseModel, Field, ValidationError, model_validator

from studyhall.schemas.reservation import GuestDetails, Holder, ReservationResponse


class ReservationIntent(BaseModel):
    """
    Everything needed to create the reservation after payment, without the
    client. Stored as JSON under payment_data["intent"] while pending.
    """

    resource_id: int
    venue_id: int
    start_date: date
    end_date: date
    amount: Decimal
    booking_period: Literal["daily", "weekly", "monthly"]
    holder: Holder

    def to_payment_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payment_data(cls, payment_data: Optional[dict]) -> Optional["ReservationIntent"]:
        raw = (payment_data or {}).get("intent")
        if not raw:
            return None
        try:
            return cls.model_validate(raw)
        except ValidationError:
            return None


class TransactionResponse(BaseModel):
    id: int
    reservation_id: Optional[int]
    amount: Decimal
    payment_method: str
    external_reference: Optional[str]
    status: str
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PaymentHandoff(BaseModel):
    """What the client needs to pay: a QR/checkout url, or a pending notice."""

    status: Literal["awaiting_payment", "pending", "offline"]
    gateway: str
    external_reference: Optional[str] = None
    payment_url: Optional[str] = None
    gateway_key: Optional[str] = None
    message: Optional[str] = None


class ReservationCreated(BaseModel):
    reservation: ReservationResponse
    transaction: TransactionResponse
    payment: PaymentHandoff


class CheckoutCreate(BaseModel):
    venue_id: int
    resource_id: int
    start_date: date
    end_date: date
    payment_method: Literal["ekqr", "razorpay"] = "ekqr"
    guest: Optional[GuestDetails] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class CheckoutCreated(BaseModel):
    transaction: TransactionResponse
    payment: PaymentHandoff


class PaymentRetry(BaseModel):
    payment_method: Literal["ekqr", "razorpay", "offline"] = "ekqr"


class RazorpayVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class FinalizeResult(BaseModel):
    transaction_id: int
    outcome: Literal["completed", "already_completed", "already_failed", "failed"]
    reservation_id: Optional[int] = None


class WebhookResult(BaseModel):
    status: Literal[
        "completed",
        "already_completed",
        "already_failed",
        "failed",
        "no_action",
        "unknown_reference",
        "amount_mismatch",
        "inconsistent",
        "error",
    ]
    transaction_id: Optional[int] = None
    reservation_id: Optional[int] = None
    message: Optional[str] = None


class RecoverySummary(BaseModel):
    checked: int = 0
    recovered: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: list[str] = []


class ManualRecoveryRequest(BaseModel):
    transaction_id: Union[int, Literal["all"]] = Field(..., description="A transaction id or 'all'")
    # Narrows "all" to one payment method
    payment_method: Optional[Literal["ekqr", "razorpay", "offline"]] = None


class ManualRecoveryResult(BaseModel):
    transaction_id: int
    success: bool
    outcome: Optional[str] = None
    reservation_id: Optional[int] = None
    error: Optional[str] = None


class PendingTransaction(TransactionResponse):
    payment_data: dict[str, Any] = {}
