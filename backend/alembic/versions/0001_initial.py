"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "parties",
        sa.Column("party_id", sa.String(length=128), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=50), nullable=False),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("party_type", sa.String(length=20), nullable=False),
        sa.Column("services", sa.JSON(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("device_token", sa.String(length=512)),
        sa.Column("lat", sa.Float()),
        sa.Column("lng", sa.Float()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    )
    op.create_index("ix_parties_party_type", "parties", ["party_type"])
    op.create_index("ix_parties_is_active", "parties", ["is_active"])

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "customer_id",
            sa.String(length=128),
            sa.ForeignKey("parties.party_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "worker_id",
            sa.String(length=128),
            sa.ForeignKey("parties.party_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("service_type", sa.String(length=32), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("scheduled_time", sa.Time(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("estimated_cost_min", sa.Float(), nullable=False),
        sa.Column("estimated_cost_max", sa.Float(), nullable=False),
        sa.Column("actual_cost", sa.Float()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("rating", sa.Integer()),
        sa.Column("review", sa.Text()),
        sa.Column("payment_status", sa.String(length=20), nullable=False, server_default="unpaid"),
        sa.Column("payment_id", sa.String(length=36)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("estimated_cost_min <= estimated_cost_max", name="ck_bookings_estimate_range"),
        sa.CheckConstraint("customer_id <> worker_id", name="ck_bookings_distinct_parties"),
        sa.CheckConstraint("rating IS NULL OR (rating BETWEEN 1 AND 5)", name="ck_bookings_rating_range"),
    )
    op.create_index("ix_bookings_customer_created", "bookings", ["customer_id", "created_at"])
    op.create_index("ix_bookings_worker_created", "bookings", ["worker_id", "created_at"])
    op.create_index("ix_bookings_status", "bookings", ["status"])

    op.create_table(
        "reviews",
        sa.Column("review_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "customer_id",
            sa.String(length=128),
            sa.ForeignKey("parties.party_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "worker_id",
            sa.String(length=128),
            sa.ForeignKey("parties.party_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating_range"),
    )
    op.create_index("ix_reviews_worker_id", "reviews", ["worker_id"])

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "party_id",
            sa.String(length=128),
            sa.ForeignKey("parties.party_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("method", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("transaction_id", sa.String(length=128)),
        sa.Column("upi_id", sa.String(length=255)),
        sa.Column("refund_amount", sa.Float()),
        sa.Column("refund_date", sa.DateTime(timezone=True)),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("payment_date", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        sa.CheckConstraint(
            "refund_amount IS NULL OR refund_amount <= amount",
            name="ck_payments_refund_within_amount",
        ),
        sa.CheckConstraint("method <> 'upi' OR upi_id IS NOT NULL", name="ck_payments_upi_id"),
    )
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"])
    op.create_index("ix_payments_party_date", "payments", ["party_id", "payment_date"])

    op.create_table(
        "refunds",
        sa.Column("refund_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "payment_id",
            sa.String(length=36),
            sa.ForeignKey("payments.payment_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("transaction_id", sa.String(length=128)),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
    )
    op.create_index("ix_refunds_payment_id", "refunds", ["payment_id"])

    op.create_table(
        "chat_messages",
        sa.Column("message_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("thread_key", sa.String(length=300), nullable=False),
        sa.Column("sender_id", sa.String(length=128)),
        sa.Column("receiver_id", sa.String(length=128)),
        sa.Column("content", sa.Text()),
        sa.Column("message_type", sa.String(length=20)),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_chat_messages_thread_order", "chat_messages", ["thread_key", "timestamp", "message_id"]
    )
    op.create_index(
        "ix_chat_messages_receiver_unread", "chat_messages", ["thread_key", "receiver_id", "is_read"]
    )

    op.create_table(
        "chat_thread_index",
        sa.Column("entry_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("party_id", sa.String(length=128), nullable=False),
        sa.Column("thread_key", sa.String(length=300), nullable=False),
        sa.Column("other_party_id", sa.String(length=128), nullable=False),
        sa.Column("last_message", sa.Text()),
        sa.Column("last_message_time", sa.DateTime(timezone=True)),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("party_id", "thread_key", name="uq_chat_thread_index_party_thread"),
        sa.CheckConstraint("unread_count >= 0", name="ck_chat_thread_index_unread"),
    )
    op.create_index(
        "ix_chat_thread_index_party_time", "chat_thread_index", ["party_id", "last_message_time"]
    )


def downgrade() -> None:
    op.drop_table("chat_thread_index")
    op.drop_table("chat_messages")
    op.drop_table("refunds")
    op.drop_table("payments")
    op.drop_table("reviews")
    op.drop_table("bookings")
    op.drop_table("parties")
