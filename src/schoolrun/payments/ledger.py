"""Payment ledger: idempotent creation, webhook reconciliation and refunds.

Status only ever moves forward. Webhooks may be delivered more than once
and out of order; anything that is not forward progress is logged and
ignored. Every applied change appends a row to the transaction log in
the same database transaction as the status update.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import ConflictError, NotFoundError, StateError, ValidationError
from ..db.repositories import IdempotencyRepository, PaymentRepository
from ..db.transaction import unit_of_work
from ..db.utils import utc_now
from ..metrics.prometheus_exporter import (
    idempotency_records_purged_total,
    payments_created_total,
    refunds_total,
    webhook_updates_total,
)
from ..run_logging import log_context
from .payment import (
    Payment,
    PaymentStatus,
    PaymentTransaction,
    TransactionEvent,
    advances,
    is_refundable,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value: Decimal | str | int | float) -> Decimal:
    """Parse an amount with at most two decimal places.

    Raises:
        ValidationError: not a number, or more precise than cents
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount {value!r}")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"Amount {value} has more than two decimal places")
    return amount.quantize(CENT)


class PaymentLedger:
    def __init__(
        self,
        session_maker: sessionmaker[Session],
        idempotency_ttl_seconds: int = 86_400,
        max_amount: Decimal = Decimal("100000.00"),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_maker = session_maker
        self._idempotency_ttl = timedelta(seconds=idempotency_ttl_seconds)
        self._max_amount = max_amount
        self._clock = clock

    def create_payment(
        self,
        idempotency_key: str,
        amount: Decimal | str | int | float,
        currency: str,
        payer_id: str,
        payee_driver_id: str | None = None,
        description: str = "",
    ) -> Payment:
        """Create a PENDING payment at most once per idempotency key.

        While the key's record is active, repeated calls return the
        payment as it was first created and write nothing. Concurrent
        callers with one key race on the record's unique key; losers
        return the winner's result.
        """
        if not idempotency_key:
            raise ValidationError("Idempotency key is required")
        money = to_money(amount)
        if money <= 0 or money > self._max_amount:
            raise ValidationError(
                f"Amount must be between 0.01 and {self._max_amount}", {"amount": str(money)}
            )
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Invalid currency {currency!r}")

        now = self._clock()
        try:
            with unit_of_work(self._session_maker) as session:
                records = IdempotencyRepository(session)
                cached = records.get_active(idempotency_key, now)
                if cached is not None:
                    logger.info(f"Idempotent replay for key {idempotency_key}")
                    return Payment.model_validate_json(cached)

                records.delete_expired(idempotency_key, now)
                payment = Payment(
                    id=str(uuid.uuid4()),
                    idempotency_key=idempotency_key,
                    amount=money,
                    currency=currency.upper(),
                    payer_id=payer_id,
                    payee_driver_id=payee_driver_id,
                    description=description,
                    created_at=now,
                    updated_at=now,
                )
                records.insert(
                    idempotency_key, payment.model_dump_json(), now + self._idempotency_ttl
                )
                payments = PaymentRepository(session)
                payments.create(payment)
                payments.add_transaction(
                    payment.id, TransactionEvent.CREATED, payment.status, amount=money
                )
        except IntegrityError:
            return self._winner_of(idempotency_key, now)

        payments_created_total.inc()
        with log_context(payment_id=payment.id):
            logger.info(f"Payment created: {money} {payment.currency} from {payer_id}")
        return payment

    def apply_webhook_update(
        self,
        payment_id: str,
        reported_status: PaymentStatus | str,
        raw_payload: dict[str, Any] | None = None,
        provider_id: str | None = None,
    ) -> Payment:
        """Apply a provider-reported status if it is forward progress.

        Replays and stale reports return the payment unchanged.

        Raises:
            NotFoundError: unknown payment
        """
        try:
            reported = PaymentStatus(reported_status)
        except ValueError as e:
            raise ValidationError(f"Unknown payment status {reported_status!r}") from e
        now = self._clock()

        with log_context(payment_id=payment_id), unit_of_work(self._session_maker) as session:
            payments = PaymentRepository(session)
            payment = self._load(payments, payment_id)

            if not advances(payment.status, reported):
                webhook_updates_total.labels(result="ignored").inc()
                logger.info(
                    f"Ignoring webhook status {reported.value}, payment is {payment.status.value}"
                )
                return payment

            values: dict[str, Any] = {}
            if provider_id:
                values["provider_id"] = provider_id
            if reported == PaymentStatus.APPROVED:
                values["paid_at"] = now
            if reported == PaymentStatus.REFUNDED:
                values["refunded_amount"] = payment.amount

            if not payments.transition(payment_id, payment.status, reported, **values):
                webhook_updates_total.labels(result="ignored").inc()
                logger.info(f"Payment changed concurrently, ignoring webhook {reported.value}")
                return self._load(payments, payment_id)

            payments.add_transaction(
                payment_id,
                TransactionEvent.WEBHOOK_RECEIVED,
                reported,
                amount=payment.amount,
                provider_payload=raw_payload,
            )
            updated = self._load(payments, payment_id)

            webhook_updates_total.labels(result="applied").inc()
            logger.info(f"Payment {payment.status.value} -> {reported.value}")
        return updated

    def refund(self, payment_id: str, amount: Decimal | str | int | float | None = None) -> Payment:
        """Refund all of the remaining amount, or part of it.

        Raises:
            NotFoundError: unknown payment
            StateError: payment is not APPROVED or PARTIALLY_REFUNDED
            ValidationError: amount is not positive or exceeds what is left
            ConflictError: a concurrent refund changed the payment first
        """
        with log_context(payment_id=payment_id), unit_of_work(self._session_maker) as session:
            payments = PaymentRepository(session)
            payment = self._load(payments, payment_id)

            if not is_refundable(payment.status):
                raise StateError(
                    f"Payment {payment_id} is {payment.status.value} and cannot be refunded",
                    {"payment_id": payment_id, "status": payment.status.value},
                )

            refund_amount = payment.remaining_refundable if amount is None else to_money(amount)
            if refund_amount <= 0 or refund_amount > payment.remaining_refundable:
                raise ValidationError(
                    f"Refund amount must be between 0.01 and {payment.remaining_refundable}",
                    {"payment_id": payment_id, "amount": str(refund_amount)},
                )

            refunded = payment.refunded_amount + refund_amount
            new_status = (
                PaymentStatus.REFUNDED
                if refunded == payment.amount
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            if not payments.apply_refund(
                payment_id, payment.status, payment.refunded_amount, new_status, refunded
            ):
                raise ConflictError(
                    f"Payment {payment_id} changed concurrently", {"payment_id": payment_id}
                )
            payments.add_transaction(
                payment_id, TransactionEvent.REFUNDED, new_status, amount=refund_amount
            )
            updated = self._load(payments, payment_id)

            refunds_total.labels(status=new_status.value).inc()
            logger.info(f"Refunded {refund_amount}, payment now {new_status.value}")
        return updated

    def get_payment(self, payment_id: str) -> Payment:
        with self._session_maker() as session:
            return self._load(PaymentRepository(session), payment_id)

    def list_transactions(self, payment_id: str) -> list[PaymentTransaction]:
        with self._session_maker() as session:
            payments = PaymentRepository(session)
            self._load(payments, payment_id)
            return payments.list_transactions(payment_id)

    def purge_expired_keys(self) -> int:
        """Delete idempotency records past their expiry; returns how many went."""
        with unit_of_work(self._session_maker) as session:
            purged = IdempotencyRepository(session).purge_expired(self._clock())
        if purged:
            idempotency_records_purged_total.inc(purged)
            logger.info(f"Purged {purged} expired idempotency records")
        return purged

    def _winner_of(self, idempotency_key: str, now: datetime) -> Payment:
        with self._session_maker() as session:
            cached = IdempotencyRepository(session).get_active(idempotency_key, now)
        if cached is None:
            raise ConflictError(
                f"Concurrent use of idempotency key {idempotency_key}",
                {"idempotency_key": idempotency_key},
            )
        logger.info(f"Lost idempotency race for key {idempotency_key}, returning winner")
        return Payment.model_validate_json(cached)

    @staticmethod
    def _load(payments: PaymentRepository, payment_id: str) -> Payment:
        payment = payments.get(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})
        return payment
