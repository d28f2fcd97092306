"""Recurring parent subscriptions billed through the payment ledger."""

from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"


class BillingCycle(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def days(self) -> int:
        return CYCLE_DAYS[self]


# Fixed-length cycles; a "month" is always 30 days.
CYCLE_DAYS: dict[BillingCycle, int] = {
    BillingCycle.WEEKLY: 7,
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.YEARLY: 365,
}


class Subscription(BaseModel):
    id: str
    payer_id: str
    plan_type: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    amount: Decimal = Field(gt=0, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    next_billing_date: date
    failed_payment_count: int = Field(default=0, ge=0)
    last_payment_attempt_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def following_billing_date(self) -> date:
        return self.next_billing_date + timedelta(days=self.billing_cycle.days)


def billing_key(subscription_id: str, billing_date: date) -> str:
    """Idempotency key for one subscription's charge on one billing date."""
    return f"subscription_{subscription_id}_billing_{billing_date:%Y-%m-%d}"
