"""
Venue (study hall / private hall) and its bookable resources (seats / cabins).

Key design decisions:
- Price tiers live on the venue; reservations copy the amount and tier they
  were booked at, so later price edits never change an existing booking
- `Resource.is_available` is a denormalized UI hint. Overlap checks always
  query reservation rows instead
"""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from studyhall.db.base import Base, TimestampMixin


class Venue(Base, TimestampMixin):
    __tablename__ = "venues"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False, default="study_hall")  # study_hall, private_hall
    daily_price = Column(Numeric(10, 2), nullable=False)
    weekly_price = Column(Numeric(10, 2), nullable=True)
    monthly_price = Column(Numeric(10, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    resources = relationship("Resource", back_populates="venue", lazy="selectin")

    __table_args__ = (
        CheckConstraint("kind IN ('study_hall', 'private_hall')", name="check_venue_kind"),
        CheckConstraint("daily_price >= 0", name="check_venue_daily_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Venue(id={self.id}, name={self.name})>"


class Resource(Base, TimestampMixin):
    __tablename__ = "resources"

    id = Column(Integer, primary_key=True, index=True)
    venue_id = Column(Integer, ForeignKey("venues.id"), nullable=False, index=True)
    label = Column(String(50), nullable=False)  # "A-12", "Cabin 3"
    kind = Column(String(10), nullable=False, default="seat")  # seat, cabin
    is_available = Column(Boolean, nullable=False, default=True)

    venue = relationship("Venue", back_populates="resources")

    __table_args__ = (
        CheckConstraint("kind IN ('seat', 'cabin')", name="check_resource_kind"),
    )

    def __repr__(self) -> str:
        return f"<Resource(id={self.id}, venue={self.venue_id}, label={self.label}, available={self.is_available})>"
