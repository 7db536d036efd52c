from studyhall.schemas.availability import (
    AvailabilityResult, ConflictInfo, DateAvailability, DateAvailabilityResponse, VenueAvailabilityResponse,
)
from studyhall.schemas.pricing import Quote, QuoteRequest
from studyhall.schemas.reservation import (
    CancelRequest, GuestDetails, Holder, ReleaseResult, ReservationCreate, ReservationResponse, VacateRequest,
)
from studyhall.schemas.payment import (
    CheckoutCreate, CheckoutCreated, FinalizeResult, ManualRecoveryRequest, ManualRecoveryResult,
    PaymentHandoff, PaymentRetry, PendingTransaction, RazorpayVerifyRequest, RecoverySummary,
    ReservationCreated, ReservationIntent, TransactionResponse, WebhookResult,
)

__all__ = [
    "AvailabilityResult", "ConflictInfo", "DateAvailability", "DateAvailabilityResponse",
    "VenueAvailabilityResponse",
    "Quote", "QuoteRequest",
    "CancelRequest", "GuestDetails", "Holder", "ReleaseResult", "ReservationCreate", "ReservationResponse", "VacateRequest",
    "CheckoutCreate", "CheckoutCreated", "FinalizeResult", "ManualRecoveryRequest", "ManualRecoveryResult",
    "PaymentHandoff", "PaymentRetry", "PendingTransaction", "RazorpayVerifyRequest", "RecoverySummary",
    "ReservationCreated", "ReservationIntent", "TransactionResponse", "WebhookResult",
]
