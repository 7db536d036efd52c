"""
Outbox of booking events for notification, points and referral consumers.

Rows are written in the same database transaction that confirms a booking,
so a confirmed booking always has its event and a rolled-back one never does.
Consumers mark rows published on their own schedule.
"""

from sqlalchemy import JSON, Column, ForeignKey, Integer, Numeric, String

from studyhall.db.base import Base, TimestampMixin


class BookingEvent(Base, TimestampMixin):
    __tablename__ = "booking_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), nullable=False)  # booking_confirmed
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    user_id = Column(String(64), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, published

    def __repr__(self) -> str:
        return f"<BookingEvent(id={self.id}, type={self.event_type}, reservation={self.reservation_id})>"
