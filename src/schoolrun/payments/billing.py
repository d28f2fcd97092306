"""Periodic billing of due subscriptions through the payment ledger.

Each charge uses an idempotency key built from the subscription id and
the day of the run, so running the biller again the same day, including
after a crash between creating the payment and advancing the billing
date, never charges twice.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import DispatchError
from ..db.repositories import SubscriptionRepository
from ..db.transaction import unit_of_work
from ..db.utils import utc_now
from ..metrics.prometheus_exporter import subscription_billings_total
from ..run_logging import log_context
from .ledger import PaymentLedger
from .payment import Payment
from .subscription import Subscription, SubscriptionStatus, billing_key

logger = logging.getLogger(__name__)


class BillingRunResult(BaseModel):
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    payment_ids: list[str] = Field(default_factory=list)


class SubscriptionBiller:
    """Charges active subscriptions whose billing date has arrived.

    A failed charge is counted against the subscription and retried on a
    later day; after ``max_failed_attempts`` consecutive failures the
    subscription moves to PAYMENT_FAILED and is no longer billed.
    """

    def __init__(
        self,
        session_maker: sessionmaker[Session],
        ledger: PaymentLedger,
        max_failed_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_maker = session_maker
        self._ledger = ledger
        self._max_failed_attempts = max_failed_attempts
        self._clock = clock

    def run(self, limit: int = 100) -> BillingRunResult:
        now = self._clock()
        today = now.date()
        with self._session_maker() as session:
            due = SubscriptionRepository(session).find_due(today, limit)

        result = BillingRunResult()
        for subscription in due:
            with log_context(subscription_id=subscription.id):
                if self._failed_today(subscription, today):
                    result.skipped += 1
                    continue
                try:
                    payment = self._charge(subscription, today)
                except DispatchError as e:
                    self._record_failure(subscription, now, e)
                    result.failed += 1
                    continue
                self._record_success(subscription, now, payment)
            result.processed += 1
            result.payment_ids.append(payment.id)

        if due:
            logger.info(
                f"Billing run: {result.processed} billed, {result.failed} failed, "
                f"{result.skipped} waiting for tomorrow"
            )
        return result

    def _charge(self, subscription: Subscription, today: date) -> Payment:
        return self._ledger.create_payment(
            billing_key(subscription.id, today),
            subscription.amount,
            subscription.currency,
            subscription.payer_id,
            description=f"Subscription billing - {subscription.plan_type} ({today:%Y-%m-%d})",
        )

    def _record_success(self, subscription: Subscription, now: datetime, payment: Payment) -> None:
        next_date = subscription.following_billing_date()
        with unit_of_work(self._session_maker) as session:
            advanced = SubscriptionRepository(session).record_success(
                subscription.id, subscription.next_billing_date, next_date, now
            )
        if not advanced:
            logger.info("Billing date already advanced by a concurrent run")
            return
        subscription_billings_total.labels(outcome="billed").inc()
        with log_context(payment_id=payment.id):
            logger.info(f"Billed {payment.amount} {payment.currency}, next billing {next_date}")

    def _record_failure(self, subscription: Subscription, now: datetime, error: Exception) -> None:
        attempts = subscription.failed_payment_count + 1
        status = (
            SubscriptionStatus.PAYMENT_FAILED
            if attempts >= self._max_failed_attempts
            else subscription.status
        )
        with unit_of_work(self._session_maker) as session:
            counted = SubscriptionRepository(session).record_failure(
                subscription.id, subscription.failed_payment_count, now, status
            )
        if not counted:
            logger.info("Failed attempt already counted by a concurrent run")
            return
        if status == SubscriptionStatus.PAYMENT_FAILED:
            subscription_billings_total.labels(outcome="suspended").inc()
            logger.warning(f"Billing failed {attempts} times, subscription suspended: {error}")
        else:
            subscription_billings_total.labels(outcome="failed").inc()
            logger.warning(f"Billing attempt {attempts} failed: {error}")

    @staticmethod
    def _failed_today(subscription: Subscription, today: date) -> bool:
        # One attempt per day; a failure is retried on the next run day.
        last = subscription.last_payment_attempt_at
        return subscription.failed_payment_count > 0 and last is not None and last.date() == today
