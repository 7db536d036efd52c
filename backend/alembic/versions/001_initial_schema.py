"""Initial schema: venues, resources, reservations, transactions, booking events.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # btree_gist lets an exclusion constraint mix "=" on resource_id with "&&" on date ranges
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    op.create_table(
        "venues",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False, server_default="study_hall"),
        sa.Column("daily_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("weekly_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("monthly_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("kind IN ('study_hall', 'private_hall')", name="check_venue_kind"),
        sa.CheckConstraint("daily_price >= 0", name="check_venue_daily_price_non_negative"),
    )
    op.create_index("ix_venues_id", "venues", ["id"])
    op.create_index("ix_venues_created_at", "venues", ["created_at"])

    op.create_table(
        "resources",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("venue_id", sa.Integer(), sa.ForeignKey("venues.id"), nullable=False),
        sa.Column("label", sa.String(50), nullable=False),
        sa.Column("kind", sa.String(10), nullable=False, server_default="seat"),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("kind IN ('seat', 'cabin')", name="check_resource_kind"),
    )
    op.create_index("ix_resources_id", "resources", ["id"])
    op.create_index("ix_resources_venue_id", "resources", ["venue_id"])
    op.create_index("ix_resources_created_at", "resources", ["created_at"])

    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("resource_id", sa.Integer(), sa.ForeignKey("resources.id"), nullable=False),
        sa.Column("venue_id", sa.Integer(), sa.ForeignKey("venues.id"), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("guest_name", sa.String(255), nullable=True),
        sa.Column("guest_phone", sa.String(32), nullable=True),
        sa.Column("guest_email", sa.String(255), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="unpaid"),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("booking_period", sa.String(10), nullable=False),
        sa.Column("vacated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("vacate_reason", sa.String(255), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("end_date >= start_date", name="check_reservation_range"),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'active', 'completed', 'cancelled', 'refunded')",
            name="check_reservation_status",
        ),
        sa.CheckConstraint("payment_status IN ('unpaid', 'paid')", name="check_reservation_payment_status"),
        sa.CheckConstraint("booking_period IN ('daily', 'weekly', 'monthly')", name="check_reservation_period"),
        sa.CheckConstraint("user_id IS NOT NULL OR guest_name IS NOT NULL", name="check_reservation_holder"),
        sa.CheckConstraint("total_amount >= 0", name="check_reservation_amount_non_negative"),
    )
    op.create_index("ix_reservations_id", "reservations", ["id"])
    op.create_index("ix_reservations_resource_id", "reservations", ["resource_id"])
    op.create_index("ix_reservations_venue_id", "reservations", ["venue_id"])
    op.create_index("ix_reservations_user_id", "reservations", ["user_id"])
    op.create_index("ix_reservations_created_at", "reservations", ["created_at"])
    # Overlap lookups: WHERE resource_id = ? AND start_date <= ? AND end_date >= ?
    op.create_index("ix_reservations_resource_range", "reservations", ["resource_id", "start_date", "end_date"])
    # Expiry sweep: WHERE status IN ('active', 'confirmed') AND end_date < today
    op.create_index("ix_reservations_status_end", "reservations", ["status", "end_date"])
    # NO DOUBLE BOOKING, enforced by the database itself.
    # daterange(start, end, '[]') is inclusive on both ends, matching the
    # application's overlap rule. Only holding statuses take part, so
    # completed/cancelled bookings never block a seat.
    op.execute(
        """
        ALTER TABLE reservations
        ADD CONSTRAINT excl_reservations_resource_overlap
        EXCLUDE USING gist (
            resource_id WITH =,
            daterange(start_date, end_date, '[]') WITH &&
        )
        WHERE (status IN ('pending', 'confirmed', 'active'))
        """
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("reservations.id"), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("external_reference", sa.String(128), nullable=True),
        sa.Column("gateway_payment_id", sa.String(128), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_data", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('pending', 'completed', 'failed')", name="check_transaction_status"),
        sa.CheckConstraint(
            "payment_method IN ('ekqr', 'razorpay', 'offline')", name="check_transaction_payment_method"
        ),
        sa.CheckConstraint("amount > 0", name="check_transaction_amount_positive"),
        sa.UniqueConstraint("external_reference", name="uq_transactions_external_reference"),
    )
    op.create_index("ix_transactions_id", "transactions", ["id"])
    op.create_index("ix_transactions_reservation_id", "transactions", ["reservation_id"])
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])
    # Recovery sweep: WHERE status = 'pending' AND payment_method IN (...) AND created_at < cutoff
    op.create_index(
        "ix_transactions_status_method_created", "transactions", ["status", "payment_method", "created_at"]
    )

    op.create_table(
        "booking_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("reservations.id"), nullable=False),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        *_timestamps(),
    )
    op.create_index("ix_booking_events_id", "booking_events", ["id"])
    op.create_index("ix_booking_events_reservation_id", "booking_events", ["reservation_id"])
    op.create_index("ix_booking_events_status", "booking_events", ["status"])
    op.create_index("ix_booking_events_created_at", "booking_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("booking_events")
    op.drop_table("transactions")
    op.drop_table("reservations")
    op.drop_table("resources")
    op.drop_table("venues")
