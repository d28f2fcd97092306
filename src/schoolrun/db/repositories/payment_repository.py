"""Payment and payment transaction repository."""

from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ...payments.payment import Payment as PaymentDomain
from ...payments.payment import PaymentStatus, TransactionEvent
from ...payments.payment import PaymentTransaction as PaymentTransactionDomain
from ..schema import Payment, PaymentTransaction
from ..utils import as_utc, utc_now


class PaymentRepository:
    """Repository for payments and their append-only transaction log."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, payment: PaymentDomain) -> None:
        self.session.add(
            Payment(
                id=payment.id,
                idempotency_key=payment.idempotency_key,
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status.value,
                refunded_amount=payment.refunded_amount,
                payer_id=payment.payer_id,
                payee_driver_id=payment.payee_driver_id,
                description=payment.description,
                created_at=payment.created_at,
                updated_at=payment.updated_at,
            )
        )
        self.session.flush()

    def get(self, payment_id: str) -> PaymentDomain | None:
        row = self.session.get(Payment, payment_id, populate_existing=True)
        if row is None:
            return None
        return self._to_domain(row)

    def transition(
        self,
        payment_id: str,
        expected: PaymentStatus,
        new_status: PaymentStatus,
        **values: Any,
    ) -> bool:
        """Compare-and-swap the payment status; False when another writer moved it first."""
        stmt = (
            update(Payment)
            .execution_options(synchronize_session=False)
            .where(Payment.id == payment_id, Payment.status == expected.value)
            .values(status=new_status.value, updated_at=utc_now(), **values)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def apply_refund(
        self,
        payment_id: str,
        expected_status: PaymentStatus,
        expected_refunded: Decimal,
        new_status: PaymentStatus,
        new_refunded: Decimal,
    ) -> bool:
        """Record a refund only if neither status nor refunded_amount changed since read."""
        stmt = (
            update(Payment)
            .execution_options(synchronize_session=False)
            .where(
                Payment.id == payment_id,
                Payment.status == expected_status.value,
                Payment.refunded_amount == expected_refunded,
            )
            .values(
                status=new_status.value,
                refunded_amount=new_refunded,
                updated_at=utc_now(),
            )
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def set_preference(self, payment_id: str, preference_id: str) -> None:
        self.session.execute(
            update(Payment)
            .execution_options(synchronize_session=False)
            .where(Payment.id == payment_id)
            .values(preference_id=preference_id, updated_at=utc_now())
        )

    def add_transaction(
        self,
        payment_id: str,
        event: TransactionEvent,
        status: PaymentStatus,
        amount: Decimal | None = None,
        provider_payload: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            PaymentTransaction(
                payment_id=payment_id,
                event=event.value,
                status=status.value,
                amount=amount,
                provider_payload=provider_payload,
            )
        )
        self.session.flush()

    def list_transactions(self, payment_id: str) -> list[PaymentTransactionDomain]:
        """Transactions for a payment, oldest first."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.payment_id == payment_id)
            .order_by(PaymentTransaction.id)
        )
        return [
            PaymentTransactionDomain(
                id=row.id,
                payment_id=row.payment_id,
                event=TransactionEvent(row.event),
                status=PaymentStatus(row.status),
                amount=row.amount,
                provider_payload=row.provider_payload,
                created_at=as_utc(row.created_at),
            )
            for row in self.session.execute(stmt).scalars().all()
        ]

    def count(self) -> int:
        return self.session.execute(select(func.count(Payment.id))).scalar_one()

    def _to_domain(self, row: Payment) -> PaymentDomain:
        return PaymentDomain(
            id=row.id,
            idempotency_key=row.idempotency_key,
            amount=Decimal(row.amount).quantize(Decimal("0.01")),
            currency=row.currency,
            status=PaymentStatus(row.status),
            refunded_amount=Decimal(row.refunded_amount).quantize(Decimal("0.01")),
            payer_id=row.payer_id,
            payee_driver_id=row.payee_driver_id,
            description=row.description,
            provider_id=row.provider_id,
            preference_id=row.preference_id,
            paid_at=as_utc(row.paid_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )
