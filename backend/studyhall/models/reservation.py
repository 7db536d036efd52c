"""
Reservation model: a claim on a seat/cabin for an inclusive date range.

Key design decisions:
- Never deleted; status carries the lifecycle
- Only pending/confirmed/active reservations hold the resource
- Holder is either a registered user id or a guest (name/phone/email)
- On PostgreSQL an exclusion constraint (see migration 001) rejects
  overlapping holding reservations for the same resource
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from studyhall.db.base import Base, TimestampMixin


class ReservationStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    HOLDING = (PENDING, CONFIRMED, ACTIVE)
    ALL = (PENDING, CONFIRMED, ACTIVE, COMPLETED, CANCELLED, REFUNDED)


class PaymentStatus:
    UNPAID = "unpaid"
    PAID = "paid"


class BookingPeriod:
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    ALL = (DAILY, WEEKLY, MONTHLY)


class Reservation(Base, TimestampMixin):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False, index=True)
    venue_id = Column(Integer, ForeignKey("venues.id"), nullable=False, index=True)

    user_id = Column(String(64), nullable=True, index=True)
    guest_name = Column(String(255), nullable=True)
    guest_phone = Column(String(32), nullable=True)
    guest_email = Column(String(255), nullable=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=ReservationStatus.PENDING)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.UNPAID)
    total_amount = Column(Numeric(10, 2), nullable=False)
    booking_period = Column(String(10), nullable=False)

    vacated_at = Column(DateTime(timezone=True), nullable=True)
    vacate_reason = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    resource = relationship("Resource")
    transactions = relationship("PaymentTransaction", back_populates="reservation")

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="check_reservation_range"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'active', 'completed', 'cancelled', 'refunded')",
            name="check_reservation_status",
        ),
        CheckConstraint("payment_status IN ('unpaid', 'paid')", name="check_reservation_payment_status"),
        CheckConstraint("booking_period IN ('daily', 'weekly', 'monthly')", name="check_reservation_period"),
        CheckConstraint("user_id IS NOT NULL OR guest_name IS NOT NULL", name="check_reservation_holder"),
        CheckConstraint("total_amount >= 0", name="check_reservation_amount_non_negative"),
        # Overlap lookups: WHERE resource_id = ? AND start_date <= ? AND end_date >= ?
        Index("ix_reservations_resource_range", "resource_id", "start_date", "end_date"),
        # Expiry sweep: WHERE status IN (...) AND end_date < today
        Index("ix_reservations_status_end", "status", "end_date"),
    )

    @property
    def holds_resource(self) -> bool:
        return self.status in ReservationStatus.HOLDING

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def __repr__(self) -> str:
        return (
            f"<Reservation(id={self.id}, resource={self.resource_id}, "
            f"{self.start_date}..{self.end_date}, status={self.status})>"
        )
