"""Subscription repository."""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ...payments.subscription import BillingCycle, SubscriptionStatus
from ...payments.subscription import Subscription as SubscriptionDomain
from ..schema import Subscription
from ..utils import as_utc, utc_now


class SubscriptionRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, subscription: SubscriptionDomain) -> None:
        self.session.add(
            Subscription(
                id=subscription.id,
                payer_id=subscription.payer_id,
                plan_type=subscription.plan_type,
                status=subscription.status.value,
                amount=subscription.amount,
                currency=subscription.currency,
                billing_cycle=subscription.billing_cycle.value,
                next_billing_date=subscription.next_billing_date,
                failed_payment_count=subscription.failed_payment_count,
                last_payment_attempt_at=subscription.last_payment_attempt_at,
                created_at=subscription.created_at,
                updated_at=subscription.updated_at,
            )
        )
        self.session.flush()

    def get(self, subscription_id: str) -> SubscriptionDomain | None:
        row = self.session.get(Subscription, subscription_id, populate_existing=True)
        if row is None:
            return None
        return self._to_domain(row)

    def find_due(self, today: date, limit: int) -> list[SubscriptionDomain]:
        """Active subscriptions billed on or before today, most overdue first."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.next_billing_date <= today,
            )
            .order_by(Subscription.next_billing_date, Subscription.id)
            .limit(limit)
        )
        return [self._to_domain(row) for row in self.session.execute(stmt).scalars().all()]

    def record_success(
        self, subscription_id: str, billed_date: date, next_date: date, attempted_at: datetime
    ) -> bool:
        """Advance the billing date; False when billed_date was already moved past."""
        stmt = (
            update(Subscription)
            .execution_options(synchronize_session=False)
            .where(
                Subscription.id == subscription_id,
                Subscription.next_billing_date == billed_date,
            )
            .values(
                next_billing_date=next_date,
                failed_payment_count=0,
                last_payment_attempt_at=attempted_at,
                updated_at=utc_now(),
            )
        )
        return self.session.execute(stmt).rowcount == 1

    def record_failure(
        self,
        subscription_id: str,
        expected_count: int,
        attempted_at: datetime,
        status: SubscriptionStatus,
    ) -> bool:
        """Count one failed attempt unless another attempt was counted since read."""
        stmt = (
            update(Subscription)
            .execution_options(synchronize_session=False)
            .where(
                Subscription.id == subscription_id,
                Subscription.failed_payment_count == expected_count,
            )
            .values(
                failed_payment_count=expected_count + 1,
                last_payment_attempt_at=attempted_at,
                status=status.value,
                updated_at=utc_now(),
            )
        )
        return self.session.execute(stmt).rowcount == 1

    def _to_domain(self, row: Subscription) -> SubscriptionDomain:
        return SubscriptionDomain(
            id=row.id,
            payer_id=row.payer_id,
            plan_type=row.plan_type,
            status=SubscriptionStatus(row.status),
            amount=Decimal(row.amount).quantize(Decimal("0.01")),
            currency=row.currency,
            billing_cycle=BillingCycle(row.billing_cycle),
            next_billing_date=row.next_billing_date,
            failed_payment_count=row.failed_payment_count,
            last_payment_attempt_at=as_utc(row.last_payment_attempt_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )
