"""
Payment transaction: one payment attempt, tied to at most one reservation.

Key design decisions:
- pending -> completed | failed, exactly once; only the reconciliation
  pipeline moves it out of pending
- reservation_id may be NULL while pending (payment-first QR checkout); the
  reservation intent stored in payment_data["intent"] is enough to create
  the reservation later without the client
- external_reference is the gateway's order / QR id and is what webhooks
  and status polls are keyed by
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from studyhall.db.base import Base, TimestampMixin


class TransactionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod:
    EKQR = "ekqr"
    RAZORPAY = "razorpay"
    OFFLINE = "offline"

    GATEWAYS = (EKQR, RAZORPAY)
    ALL = (EKQR, RAZORPAY, OFFLINE)


class PaymentTransaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(String(20), nullable=False)
    external_reference = Column(String(128), nullable=True, unique=True)
    gateway_payment_id = Column(String(128), nullable=True)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING)
    payment_data = Column(JSON, nullable=False, default=dict)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    reservation = relationship("Reservation", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'failed')", name="check_transaction_status"),
        CheckConstraint(
            "payment_method IN ('ekqr', 'razorpay', 'offline')", name="check_transaction_payment_method"
        ),
        CheckConstraint("amount > 0", name="check_transaction_amount_positive"),
        # Recovery sweep: WHERE status = 'pending' AND payment_method IN (...) AND created_at < cutoff
        Index("ix_transactions_status_method_created", "status", "payment_method", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING

    def merge_payment_data(self, **fields) -> None:
        # Reassign rather than mutate: plain JSON columns do not track in-place changes
        self.payment_data = {**(self.payment_data or {}), **fields}

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(id={self.id}, method={self.payment_method}, "
            f"ref={self.external_reference}, status={self.status})>"
        )
