"""Payment provider webhook signature validation and status mapping."""

import hashlib
import hmac
import logging
import time
from collections.abc import Callable, Mapping

from .payment import PaymentStatus

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
    "in_process": PaymentStatus.PROCESSING,
    "in_mediation": PaymentStatus.PROCESSING,
}


def map_provider_status(provider_status: str) -> PaymentStatus:
    """Translate a provider status string; unknown values map to PENDING."""
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower(), PaymentStatus.PENDING)


def compute_signature(secret: str, data_id: str, request_id: str, timestamp: int) -> str:
    signed = f"id:{data_id};request-id:{request_id};ts:{timestamp};"
    return hmac.new(secret.encode(), signed.encode(), hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> dict[str, str]:
    """Split ``ts=...,v1=...`` into its parts."""
    parts: dict[str, str] = {}
    for segment in header.split(","):
        key, sep, value = segment.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


class WebhookValidator:
    """Checks the ``x-signature`` HMAC on inbound provider webhooks.

    The signed string covers the notified resource id, the request id and
    the timestamp; timestamps further than ``tolerance_seconds`` from now
    are rejected to block replays.
    """

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self._tolerance = tolerance_seconds
        self._clock = clock

    def is_valid(self, headers: Mapping[str, str], data_id: str) -> bool:
        if not self._secret:
            logger.error("Webhook secret is not configured, rejecting webhook")
            return False

        normalized = {key.lower(): value for key, value in headers.items()}
        x_signature = normalized.get("x-signature")
        request_id = normalized.get("x-request-id")
        if not x_signature or not request_id:
            logger.warning(
                f"Webhook missing required headers (signature={x_signature is not None}, "
                f"request_id={request_id is not None})"
            )
            return False

        parts = parse_signature_header(x_signature)
        if "ts" not in parts or "v1" not in parts:
            logger.warning("Invalid webhook signature format")
            return False

        try:
            timestamp = int(parts["ts"])
        except ValueError:
            logger.warning(f"Invalid webhook timestamp: {parts['ts']}")
            return False

        now = self._clock()
        if abs(now - timestamp) > self._tolerance:
            logger.warning(
                f"Webhook timestamp outside tolerance window (diff={now - timestamp:.0f}s)"
            )
            return False

        expected = compute_signature(self._secret, data_id, request_id, timestamp)
        if not hmac.compare_digest(expected, parts["v1"]):
            logger.warning(f"Webhook signature mismatch for data_id={data_id}")
            return False

        logger.info(f"Webhook signature validated for request {request_id}")
        return True
