"""Provider-facing payment operations built on the ledger."""

import logging
import time
from collections.abc import Callable
from decimal import Decimal

from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import StateError, ValidationError
from ..core.retry import RetryConfig, with_retry_sync
from ..db.repositories import PaymentRepository
from ..db.transaction import unit_of_work
from ..run_logging import log_context
from .gateway import PaymentGateway, PreferenceResult
from .ledger import PaymentLedger, to_money
from .payment import Payment, PaymentStatus, is_refundable
from .webhook import map_provider_status

logger = logging.getLogger(__name__)


class CheckoutService:
    """Talks to the payment provider on behalf of the ledger.

    Preference creation and status lookups are retried with exponential
    backoff on ``UpstreamError``. Refunds are sent to the provider once,
    since a repeated refund call is not safe to replay.
    """

    def __init__(
        self,
        session_maker: sessionmaker[Session],
        ledger: PaymentLedger,
        gateway: PaymentGateway,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_maker = session_maker
        self._ledger = ledger
        self._gateway = gateway
        self._retry = RetryConfig(max_attempts=max_attempts, base_delay=retry_base_delay)
        self._sleep = sleep

    def create_preference(self, payment_id: str) -> PreferenceResult:
        """Open a provider checkout for a pending payment and remember its id."""
        payment = self._ledger.get_payment(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise StateError(
                f"Payment {payment_id} is {payment.status.value}, checkout needs pending",
                {"payment_id": payment_id},
            )

        result = with_retry_sync(
            lambda: self._gateway.create_preference(payment),
            self._retry,
            operation_name=f"create_preference({payment_id})",
            sleep=self._sleep,
        )
        with unit_of_work(self._session_maker) as session:
            PaymentRepository(session).set_preference(payment_id, result.preference_id)

        with log_context(payment_id=payment_id):
            logger.info(f"Checkout preference {result.preference_id} created")
        return result

    def sync_status(self, payment_id: str) -> Payment:
        """Pull the provider's view of a payment and reconcile it like a webhook."""
        payment = self._ledger.get_payment(payment_id)
        if not payment.provider_id:
            raise StateError(
                f"Payment {payment_id} has no provider id yet", {"payment_id": payment_id}
            )
        provider_payment = with_retry_sync(
            lambda: self._gateway.fetch_status(payment.provider_id),
            self._retry,
            operation_name=f"fetch_status({payment.provider_id})",
            sleep=self._sleep,
        )
        return self._ledger.apply_webhook_update(
            payment_id,
            map_provider_status(provider_payment.status),
            provider_payment.raw,
            provider_id=provider_payment.provider_id,
        )

    def refund(self, payment_id: str, amount: Decimal | str | None = None) -> Payment:
        """Refund through the provider, then record it in the ledger."""
        payment = self._ledger.get_payment(payment_id)
        if not is_refundable(payment.status):
            raise StateError(
                f"Payment {payment_id} is {payment.status.value} and cannot be refunded",
                {"payment_id": payment_id},
            )
        if not payment.provider_id:
            raise StateError(
                f"Payment {payment_id} has no provider id", {"payment_id": payment_id}
            )
        refund_amount = None if amount is None else to_money(amount)
        if refund_amount is not None and not (
            Decimal("0") < refund_amount <= payment.remaining_refundable
        ):
            raise ValidationError(
                f"Refund amount must be between 0.01 and {payment.remaining_refundable}",
                {"payment_id": payment_id},
            )

        self._gateway.refund(payment.provider_id, refund_amount)
        return self._ledger.refund(payment_id, refund_amount)
