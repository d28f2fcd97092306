"""Payment model and its monotonic status state machine."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, Field, model_validator


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class TransactionEvent(str, Enum):
    CREATED = "created"
    WEBHOOK_RECEIVED = "webhook_received"
    REFUNDED = "refunded"


# Provider reports may skip PROCESSING, so PENDING can settle directly.
VALID_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.APPROVED,
        PaymentStatus.REJECTED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.APPROVED,
        PaymentStatus.REJECTED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.APPROVED: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.REFUNDED},
    PaymentStatus.REJECTED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

REFUNDABLE_STATUSES = frozenset({PaymentStatus.APPROVED, PaymentStatus.PARTIALLY_REFUNDED})


def is_refundable(status: PaymentStatus) -> bool:
    return status in REFUNDABLE_STATUSES


def advances(current: PaymentStatus, reported: PaymentStatus) -> bool:
    """True if moving from current to reported is forward progress."""
    return reported in VALID_PAYMENT_TRANSITIONS[current]


class Payment(BaseModel):
    """A parent-to-driver payment."""

    id: str
    idempotency_key: str
    amount: Decimal = Field(gt=0, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3)
    status: PaymentStatus = PaymentStatus.PENDING
    refunded_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    payer_id: str
    payee_driver_id: str | None = None
    description: str = ""
    provider_id: str | None = None
    preference_id: str | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def check_refund_bound(self) -> Self:
        if self.refunded_amount > self.amount:
            raise ValueError("refunded_amount cannot exceed amount")
        return self

    @property
    def remaining_refundable(self) -> Decimal:
        return self.amount - self.refunded_amount


class PaymentTransaction(BaseModel):
    """Append-only ledger entry for a payment."""

    id: int
    payment_id: str
    event: TransactionEvent
    status: PaymentStatus
    amount: Decimal | None = None
    provider_payload: dict[str, Any] | None = None
    created_at: datetime
