"""
Razorpay client.

Creates orders over the REST API and verifies the two signatures Razorpay
produces: the checkout signature returned to the client after payment and the
webhook signature over the raw request body.
"""

import hashlib
import hmac
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
from django.conf import settings

from apps.billing.exceptions import GatewayError
from apps.core.logging import get_logger

logger = get_logger(__name__)

# Network configuration
REQUEST_TIMEOUT = 30
# Connection failures are retried; order creation never reached Razorpay
MAX_CONNECT_RETRIES = 2


@dataclass(frozen=True)
class GatewayOrder:
    """Order created at the gateway for one payment attempt."""

    order_id: str
    amount_minor: int
    currency: str


def to_minor_units(amount: Decimal) -> int:
    """Convert a rupee amount to integer paise."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("description"):
        return str(error["description"])
    return f"HTTP {response.status_code}"


def create_order(amount: Decimal, currency: str, metadata: dict[str, Any]) -> GatewayOrder:
    """
    Create a Razorpay order for ``amount``.

    Args:
        amount: Amount in major units (rupees)
        currency: ISO currency code
        metadata: Stored on the order as notes; ``receipt`` is lifted out

    Raises:
        GatewayError: If Razorpay rejects the request or cannot be reached
    """
    notes = {key: str(value) for key, value in metadata.items() if key != "receipt"}
    body = {
        "amount": to_minor_units(amount),
        "currency": currency,
        "notes": notes,
    }
    if metadata.get("receipt"):
        body["receipt"] = str(metadata["receipt"])

    url = f"{settings.RAZORPAY_API_BASE.rstrip('/')}/orders"
    auth = (settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)

    response = None
    for attempt in range(MAX_CONNECT_RETRIES + 1):
        try:
            with httpx.Client(timeout=REQUEST_TIMEOUT, auth=auth) as client:
                response = client.post(url, json=body)
            break
        except httpx.ConnectError as e:
            logger.warning("razorpay_connect_failed", attempt=attempt + 1, error=str(e))
            if attempt == MAX_CONNECT_RETRIES:
                raise GatewayError(f"Payment gateway unreachable: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("razorpay_request_failed", error=str(e))
            raise GatewayError(f"Payment gateway request failed: {e}") from e

    if response.status_code >= 400:
        message = _error_message(response)
        logger.warning(
            "razorpay_order_rejected",
            http_status=response.status_code,
            error=message,
        )
        raise GatewayError(message)

    order = response.json()
    logger.info("razorpay_order_created", order_id=order["id"], amount=body["amount"])
    return GatewayOrder(
        order_id=order["id"],
        amount_minor=int(order.get("amount", body["amount"])),
        currency=order.get("currency", currency),
    )


def _signatures_match(expected: str, received: str) -> bool:
    # compare_digest rejects non-ASCII str; received values are arbitrary client text
    return hmac.compare_digest(expected.encode(), received.encode("utf-8", "surrogateescape"))


def checkout_signature(order_id: str, payment_id: str) -> str:
    """Signature Razorpay checkout returns for a successful payment."""
    return _sign(settings.RAZORPAY_KEY_SECRET, f"{order_id}|{payment_id}".encode())


def verify_checkout_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """Check a checkout signature in constant time."""
    if not signature:
        return False
    return _signatures_match(checkout_signature(order_id, payment_id), signature)


def webhook_signature(raw_body: bytes) -> str:
    """Signature Razorpay sends in X-Razorpay-Signature for ``raw_body``."""
    return _sign(settings.RAZORPAY_WEBHOOK_SECRET, raw_body)


def verify_webhook_signature(raw_body: bytes, signature: str | None) -> bool:
    """Check a webhook signature over the exact bytes received."""
    if not signature:
        return False
    return _signatures_match(webhook_signature(raw_body), signature)
