"""Payment provider seam."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from .payment import Payment


@dataclass(frozen=True)
class PreferenceResult:
    preference_id: str
    checkout_url: str


@dataclass(frozen=True)
class ProviderPayment:
    provider_id: str
    status: str
    raw: dict


class PaymentGateway(Protocol):
    """Payment provider client. Failures raise ``UpstreamError``."""

    def create_preference(self, payment: Payment) -> PreferenceResult: ...

    def fetch_status(self, provider_id: str) -> ProviderPayment: ...

    def refund(self, provider_id: str, amount: Decimal | None = None) -> None: ...
