"""
Payment gateway webhook handler.

This is a separate view (not Django Ninja) for raw request handling needed
to verify gateway signatures over the exact bytes received.

Every verified delivery is stored as a WebhookEvent keyed by the gateway's
event id. A redelivered event that was already processed is acknowledged
without touching any billing state. Dispatch failures are logged and kept on
the event row but still acknowledged with 200, so the gateway does not retry
a permanently failing event forever.
"""

import hashlib
import json
from typing import Any

from django.db import transaction
from django.http import HttpRequest, JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from apps.billing import ledger, services
from apps.billing.events import (
    GatewayEvent,
    PaymentAuthorized,
    PaymentCaptured,
    PaymentFailed,
    SubscriptionCancelled,
    SubscriptionCharged,
    SubscriptionHalted,
    SubscriptionPending,
    UnknownEvent,
    entity_id,
    parse_gateway_event,
)
from apps.billing.gateway_client import verify_webhook_signature
from apps.billing.models import Gateway, WebhookEvent
from apps.core.logging import get_logger
from apps.core.schemas import error_body

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"
EVENT_ID_HEADER = "X-Razorpay-Event-Id"
PAYMENT_EVENT_PREFIX = "payment."
MAX_ERROR_LENGTH = 2000


def _error(status: int, code: str, message: str) -> JsonResponse:
    return JsonResponse(error_body(code, message), status=status)


def _acknowledge() -> JsonResponse:
    return JsonResponse({"status": "ok"})


def resolve_event_id(request: HttpRequest, body: dict[str, Any], raw_body: bytes) -> str:
    """
    Gateway idempotency key for a delivery.

    Uses the gateway's event id header. Without it, payment events are keyed
    by ``<event>:<payment id>`` since a payment reaches each state once.
    Other events (subscription charges and dunning repeat every cycle for the
    same subscription) are keyed by a digest of the body.
    """
    header_id = request.headers.get(EVENT_ID_HEADER)
    if header_id:
        return header_id
    event_type = body["event"]
    if event_type.startswith(PAYMENT_EVENT_PREFIX):
        subject = entity_id(body)
        if subject:
            return f"{event_type}:{subject}"
    return f"{event_type}:{hashlib.sha256(raw_body).hexdigest()}"


def reconcile_event(event: GatewayEvent) -> None:
    """Apply one verified gateway event to billing state."""
    match event:
        case PaymentAuthorized():
            payment = ledger.find_payment_by_order(event.payment.order_id or "")
            ledger.mark_payment_authorized(payment, gateway_payment_id=event.payment.id)

        case PaymentCaptured():
            payment = ledger.find_payment_by_order(event.payment.order_id or "")
            ledger.mark_payment_captured(payment, gateway_payment_id=event.payment.id)

        case PaymentFailed():
            payment = ledger.find_payment_by_order(event.payment.order_id or "")
            ledger.mark_payment_failed(payment, event.failure_reason)

        case SubscriptionCharged():
            # Recurring-charge invoicing happens upstream; keep the audit trail only
            logger.info(
                "razorpay_subscription_charged",
                gateway_subscription_id=event.subscription.id,
            )

        case SubscriptionPending() | SubscriptionHalted():
            services.mark_past_due(event.subscription.id)

        case SubscriptionCancelled():
            services.cancel_from_gateway(event.subscription.id)

        case UnknownEvent():
            logger.info("webhook_event_ignored", event_type=event.event)


@csrf_exempt
@require_POST
def gateway_webhook(request: HttpRequest, gateway: str) -> JsonResponse:
    """
    Handle payment gateway webhook events.

    Verifies signature, records the event and dispatches it.
    """
    if gateway != Gateway.RAZORPAY:
        logger.warning("webhook_unknown_gateway", gateway=gateway)
        return _error(404, "NOT_FOUND", f"Unknown payment gateway '{gateway}'")

    raw_body = request.body
    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_webhook_signature(raw_body, signature):
        logger.warning("webhook_invalid_signature", gateway=gateway, has_signature=bool(signature))
        return _error(400, "INVALID_SIGNATURE", "Invalid webhook signature")

    try:
        body = json.loads(raw_body)
    except ValueError as e:
        logger.warning("webhook_invalid_payload", gateway=gateway, error=str(e))
        return _error(400, "VALIDATION_ERROR", "Webhook body is not valid JSON")

    if not isinstance(body, dict) or not isinstance(body.get("event"), str):
        logger.warning("webhook_missing_event_type", gateway=gateway)
        return _error(400, "VALIDATION_ERROR", "Webhook body has no event type")

    event_type = body["event"]
    event_id = resolve_event_id(request, body, raw_body)
    logger.info("webhook_received", gateway=gateway, event_type=event_type, event_id=event_id)

    with transaction.atomic():
        record, created = WebhookEvent.objects.select_for_update().get_or_create(
            event_id=event_id,
            defaults={
                "gateway": gateway,
                "event_type": event_type,
                "payload": body,
                "signature": signature,
            },
        )
        if record.processed:
            logger.info("webhook_duplicate_ignored", event_id=event_id, event_type=event_type)
            return _acknowledge()

        try:
            with transaction.atomic():
                reconcile_event(parse_gateway_event(body))
        except Exception as e:
            logger.exception("webhook_dispatch_failed", event_id=event_id, event_type=event_type)
            record.last_error = f"{type(e).__name__}: {e}"[:MAX_ERROR_LENGTH]
            record.save(update_fields=["last_error"])
        else:
            record.processed = True
            record.processed_at = timezone.now()
            record.last_error = ""
            record.save(update_fields=["processed", "processed_at", "last_error"])
            logger.info(
                "webhook_processed",
                event_id=event_id,
                event_type=event_type,
                redelivery=not created,
            )

    return _acknowledge()
