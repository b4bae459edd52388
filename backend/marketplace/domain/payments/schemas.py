from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PaymentMethod(str, Enum):
    credit_card = "credit_card"
    debit_card = "debit_card"
    upi = "upi"
    net_banking = "net_banking"
    wallet = "wallet"
    cash = "cash"


class PaymentStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"
    cancelled = "cancelled"


class RefundStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.pending: {PaymentStatus.processing, PaymentStatus.cancelled},
    PaymentStatus.processing: {PaymentStatus.completed, PaymentStatus.failed},
    PaymentStatus.completed: {PaymentStatus.refunded},
    PaymentStatus.failed: set(),
    PaymentStatus.refunded: set(),
    PaymentStatus.cancelled: set(),
}

REFUND_TRANSITIONS: dict[RefundStatus, set[RefundStatus]] = {
    RefundStatus.pending: {RefundStatus.processing},
    RefundStatus.processing: {RefundStatus.completed, RefundStatus.failed},
    RefundStatus.completed: set(),
    RefundStatus.failed: set(),
}

OPEN_PAYMENT_STATUSES = frozenset({PaymentStatus.pending.value, PaymentStatus.processing.value})
OPEN_REFUND_STATUSES = frozenset({RefundStatus.pending.value, RefundStatus.processing.value})


class PaymentCreateRequest(BaseModel):
    booking_id: str = Field(min_length=1)
    amount: float = Field(gt=0)
    method: PaymentMethod
    upi_id: str | None = Field(None, max_length=255)

    @model_validator(mode="after")
    def normalize_upi(self) -> "PaymentCreateRequest":
        if self.upi_id is not None:
            self.upi_id = self.upi_id.strip() or None
        return self


class RefundCreateRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
    amount: float | None = Field(None, gt=0)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    booking_id: str
    party_id: str
    amount: float
    method: PaymentMethod
    status: PaymentStatus
    payment_date: datetime
    transaction_id: str | None = None
    upi_id: str | None = None
    refund_amount: float | None = None
    refund_date: datetime | None = None
    failure_reason: str | None = None


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    refund_id: str
    payment_id: str
    amount: float
    reason: str
    status: RefundStatus
    created_at: datetime
    processed_at: datetime | None = None
    transaction_id: str | None = None
    failure_reason: str | None = None


class PaymentAnalytics(BaseModel):
    total_payments: int = 0
    total_amount: float = 0.0
    completed_count: int = 0
    failed_count: int = 0
    refunded_count: int = 0
    success_rate: float = 0.0
