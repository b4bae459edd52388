from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone

import sqlalchemy as sa
from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.infra.db import Base


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    customer_id: Mapped[str] = mapped_column(
        ForeignKey("parties.party_id", ondelete="CASCADE"), nullable=False
    )
    worker_id: Mapped[str] = mapped_column(
        ForeignKey("parties.party_id", ondelete="CASCADE"), nullable=False
    )
    service_type: Mapped[str] = mapped_column(String(32), nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_time: Mapped[time] = mapped_column(Time, nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    address: Mapped[str] = mapped_column(Text(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    estimated_cost_min: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_cost_max: Mapped[float] = mapped_column(Float, nullable=False)
    actual_cost: Mapped[float | None] = mapped_column(Float)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rating: Mapped[int | None] = mapped_column(Integer)
    review: Mapped[str | None] = mapped_column(Text())
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="unpaid", server_default="unpaid"
    )
    payment_id: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("estimated_cost_min <= estimated_cost_max", name="ck_bookings_estimate_range"),
        CheckConstraint("customer_id <> worker_id", name="ck_bookings_distinct_parties"),
        CheckConstraint("rating IS NULL OR (rating BETWEEN 1 AND 5)", name="ck_bookings_rating_range"),
        Index("ix_bookings_customer_created", "customer_id", "created_at"),
        Index("ix_bookings_worker_created", "worker_id", "created_at"),
        Index("ix_bookings_status", "status"),
    )

    @property
    def estimated_cost(self) -> dict[str, float]:
        return {"min": self.estimated_cost_min, "max": self.estimated_cost_max}

    def has_participant(self, party_id: str) -> bool:
        return party_id in (self.customer_id, self.worker_id)


class Review(Base):
    __tablename__ = "reviews"

    review_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False, unique=True
    )
    customer_id: Mapped[str] = mapped_column(
        ForeignKey("parties.party_id", ondelete="CASCADE"), nullable=False
    )
    worker_id: Mapped[str] = mapped_column(
        ForeignKey("parties.party_id", ondelete="CASCADE"), nullable=False
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=sa.func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating_range"),
        Index("ix_reviews_worker_id", "worker_id"),
    )
