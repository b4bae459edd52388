from __future__ import annotations

from datetime import date, datetime, time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from marketplace.domain.parties.schemas import ServiceType


class BookingStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class BookingPaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"
    refunded = "refunded"


class CostRange(BaseModel):
    min: float = Field(ge=0)
    max: float = Field(ge=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "CostRange":
        if self.min > self.max:
            raise ValueError("estimated cost min must not exceed max")
        return self


class BookingCreateRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    service_type: ServiceType
    scheduled_date: date
    scheduled_time: time
    description: str = Field("", max_length=2000)
    address: str = Field(min_length=1, max_length=500)


class BookingStatusUpdateRequest(BaseModel):
    status: BookingStatus
    actual_cost: float | None = Field(None, ge=0)


class ReviewCreateRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(None, max_length=2000)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    customer_id: str
    worker_id: str
    service_type: ServiceType
    scheduled_date: date
    scheduled_time: time
    description: str
    address: str
    status: BookingStatus
    estimated_cost: CostRange
    created_at: datetime
    actual_cost: float | None = None
    completed_at: datetime | None = None
    rating: int | None = None
    review: str | None = None
    payment_status: BookingPaymentStatus
    payment_id: str | None = None


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    review_id: str
    booking_id: str
    customer_id: str
    worker_id: str
    rating: int
    comment: str | None = None
    created_at: datetime


class EstimateResponse(BaseModel):
    service_type: ServiceType
    estimated_cost: CostRange
