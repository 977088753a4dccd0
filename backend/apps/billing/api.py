"""
Billing API endpoints.

Handles the plan catalog, subscription purchase and lifecycle, usage
metering, invoices and payment checkout. Every success body is wrapped in
the {"data", "meta"} envelope; errors are raised as ApiError and rendered by
the API-level exception handler.
"""

import math
from typing import Literal

from django.conf import settings
from django.http import HttpRequest
from ninja import Query, Router

from apps.billing import catalog, ledger, services
from apps.billing.schemas import (
    CancelSubscriptionRequest,
    EntitlementsOut,
    InvoiceListResponse,
    InvoiceOut,
    PauseSubscriptionRequest,
    PaymentConfirmRequest,
    PaymentConfirmResponse,
    PaymentInitRequest,
    PaymentInitResponse,
    PlanOut,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionOut,
    UsageOut,
    UsageRequest,
)
from apps.core.auth import Audience
from apps.core.idempotency import run_idempotent
from apps.core.logging import get_logger
from apps.core.schemas import Envelope, ErrorResponse, envelope
from apps.core.security import BearerAuth, get_auth_context

logger = get_logger(__name__)

router = Router(tags=["subscriptions"])
catalog_router = Router(tags=["catalog"])
payments_router = Router(tags=["payments"])
bearer_auth = BearerAuth()

IDEMPOTENCY_HEADER = "Idempotency-Key"
MAX_PAGE_SIZE = 100


# --- Catalog (public) ---


@catalog_router.get(
    "/plans",
    response={200: Envelope[list[PlanOut]], 400: ErrorResponse},
    operation_id="listPlans",
    summary="List published plans",
)
def list_plans(
    request: HttpRequest,
    audience: Literal["owner", "tenant"] | None = None,
) -> dict:
    """
    List published plans, ordered by sort order then price.

    With ``audience``, only plans that audience can buy (including plans for
    both audiences) are returned.
    """
    plans = catalog.list_published_plans(Audience(audience) if audience else None)
    return envelope(request, plans)


@catalog_router.get(
    "/plans/{code}",
    response={200: Envelope[PlanOut], 404: ErrorResponse},
    operation_id="getPlan",
    summary="Get a published plan by code",
)
def get_plan(request: HttpRequest, code: str) -> dict:
    return envelope(request, catalog.find_published_plan(code))


# --- Subscriptions ---


@router.post(
    "/subscriptions",
    response={
        200: Envelope[SubscribeResponse],
        201: Envelope[SubscribeResponse],
        400: ErrorResponse,
        401: ErrorResponse,
        404: ErrorResponse,
        409: ErrorResponse,
    },
    auth=bearer_auth,
    operation_id="subscribe",
    summary="Subscribe to a plan",
)
def subscribe(request: HttpRequest, payload: SubscribeRequest) -> tuple[int, dict]:
    """
    Purchase a plan: creates the subscription and its pending invoice.

    Send an Idempotency-Key header to make retries safe; a repeated key
    returns the original data with status 200 instead of 201.
    """
    identity = get_auth_context(request)
    options = services.SubscribeOptions(**payload.model_dump())

    def purchase() -> dict:
        subscription, invoice = services.subscribe(identity, options)
        result = SubscribeResponse.model_validate(
            {"subscription": subscription, "invoice": invoice}
        )
        return result.model_dump(mode="json")

    data, replayed = run_idempotent(
        request.headers.get(IDEMPOTENCY_HEADER),
        f"subscription_create:{identity.user_id}:{identity.audience.value}",
        purchase,
    )
    return (200 if replayed else 201), envelope(request, data)


@router.get(
    "/subscriptions",
    response={200: Envelope[list[SubscriptionOut]], 401: ErrorResponse},
    auth=bearer_auth,
    operation_id="listSubscriptions",
    summary="List my subscriptions",
)
def list_subscriptions(request: HttpRequest) -> dict:
    identity = get_auth_context(request)
    return envelope(request, services.list_subscriptions(identity))


@router.get(
    "/subscriptions/{subscription_id}",
    response={200: Envelope[SubscriptionOut], 401: ErrorResponse, 404: ErrorResponse},
    auth=bearer_auth,
    operation_id="getSubscription",
    summary="Get one of my subscriptions",
)
def get_subscription(request: HttpRequest, subscription_id: int) -> dict:
    identity = get_auth_context(request)
    return envelope(request, services.get_subscription(identity, subscription_id))


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response={
        200: Envelope[SubscriptionOut],
        401: ErrorResponse,
        404: ErrorResponse,
        409: ErrorResponse,
    },
    auth=bearer_auth,
    operation_id="cancelSubscription",
    summary="Cancel a subscription",
)
def cancel_subscription(
    request: HttpRequest, subscription_id: int, payload: CancelSubscriptionRequest
) -> dict:
    """
    Cancel at period end (default) or immediately.

    Only trialing and active subscriptions can be canceled.
    """
    identity = get_auth_context(request)
    subscription = services.cancel_subscription(
        identity, subscription_id, cancel_at_period_end=payload.cancel_at_period_end
    )
    return envelope(request, subscription)


@router.post(
    "/subscriptions/{subscription_id}/pause",
    response={
        200: Envelope[SubscriptionOut],
        400: ErrorResponse,
        401: ErrorResponse,
        404: ErrorResponse,
        409: ErrorResponse,
    },
    auth=bearer_auth,
    operation_id="pauseSubscription",
    summary="Pause an active subscription",
)
def pause_subscription(
    request: HttpRequest, subscription_id: int, payload: PauseSubscriptionRequest
) -> dict:
    identity = get_auth_context(request)
    subscription = services.pause_subscription(
        identity, subscription_id, resume_at=payload.resume_at
    )
    return envelope(request, subscription)


@router.post(
    "/subscriptions/{subscription_id}/resume",
    response={
        200: Envelope[SubscriptionOut],
        401: ErrorResponse,
        404: ErrorResponse,
        409: ErrorResponse,
    },
    auth=bearer_auth,
    operation_id="resumeSubscription",
    summary="Resume a paused subscription",
)
def resume_subscription(request: HttpRequest, subscription_id: int) -> dict:
    identity = get_auth_context(request)
    return envelope(request, services.resume_subscription(identity, subscription_id))


@router.get(
    "/entitlements",
    response={200: Envelope[EntitlementsOut], 401: ErrorResponse},
    auth=bearer_auth,
    operation_id="getEntitlements",
    summary="Get features granted by my live subscription",
)
def get_entitlements(request: HttpRequest) -> dict:
    identity = get_auth_context(request)
    entitlements = services.get_entitlements(identity)

    subscription = None
    if entitlements.subscription is not None:
        subscription = {
            "id": entitlements.subscription.id,
            "status": entitlements.subscription.status,
            "plan": entitlements.subscription.plan.name,
            "current_period_end": entitlements.subscription.current_period_end,
        }

    return envelope(
        request,
        {
            "has_active_subscription": entitlements.has_active_subscription,
            "subscription": subscription,
            "features": entitlements.features,
        },
    )


@router.post(
    "/usage/consume",
    response={200: Envelope[UsageOut], 400: ErrorResponse, 401: ErrorResponse, 404: ErrorResponse},
    auth=bearer_auth,
    operation_id="consumeUsage",
    summary="Record metered usage for the current period",
)
def consume_usage(request: HttpRequest, payload: UsageRequest) -> dict:
    identity = get_auth_context(request)
    usage = services.consume_usage(identity, payload.metric, payload.quantity)
    return envelope(request, usage)


# --- Invoices & payments ---


@payments_router.get(
    "/invoices",
    response={200: Envelope[InvoiceListResponse], 401: ErrorResponse},
    auth=bearer_auth,
    operation_id="listInvoices",
    summary="List my invoices",
)
def list_invoices(
    request: HttpRequest,
    status: Literal["pending", "paid", "void", "refunded"] | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
) -> dict:
    identity = get_auth_context(request)
    invoices, total = ledger.list_invoices(identity.user_id, status=status, page=page, limit=limit)
    return envelope(
        request,
        {
            "invoices": invoices,
            "pagination": {
                "current": page,
                "total": math.ceil(total / limit),
                "has_next": page * limit < total,
            },
        },
    )


@payments_router.get(
    "/invoices/{invoice_id}",
    response={200: Envelope[InvoiceOut], 401: ErrorResponse, 404: ErrorResponse},
    auth=bearer_auth,
    operation_id="getInvoice",
    summary="Get one of my invoices",
)
def get_invoice(request: HttpRequest, invoice_id: int) -> dict:
    identity = get_auth_context(request)
    return envelope(request, ledger.get_invoice(identity.user_id, invoice_id))


@payments_router.post(
    "/payments/init",
    response={
        200: Envelope[PaymentInitResponse],
        400: ErrorResponse,
        401: ErrorResponse,
        404: ErrorResponse,
        409: ErrorResponse,
        500: ErrorResponse,
    },
    auth=bearer_auth,
    operation_id="initializePayment",
    summary="Create a gateway order for a pending invoice",
)
def initialize_payment(request: HttpRequest, payload: PaymentInitRequest) -> dict:
    """
    Start checkout for a pending invoice.

    Calling again while the previous attempt is still open returns the same
    gateway order.
    """
    identity = get_auth_context(request)
    payment = ledger.initialize_payment(identity.user_id, payload.invoice_id, payload.gateway)
    return envelope(
        request,
        {
            "payment_id": payment.id,
            "status": payment.status,
            "gateway": payment.gateway,
            "gateway_order_id": payment.gateway_order_id,
            "gateway_key_id": settings.RAZORPAY_KEY_ID,
            "amount": payment.amount,
            "currency": payment.currency,
            "invoice_no": payment.invoice.invoice_no,
        },
    )


@payments_router.post(
    "/payments/confirm",
    response={
        200: Envelope[PaymentConfirmResponse],
        400: ErrorResponse,
        401: ErrorResponse,
        404: ErrorResponse,
    },
    auth=bearer_auth,
    operation_id="confirmPayment",
    summary="Confirm a checkout with the gateway's signed payload",
)
def confirm_payment(request: HttpRequest, payload: PaymentConfirmRequest) -> dict:
    """
    Verify the checkout signature and settle the invoice.

    Confirming an invoice that is already paid returns its current state.
    """
    identity = get_auth_context(request)
    gateway_payload = payload.payload_from_gateway
    confirmation = ledger.confirm_payment(
        identity.user_id,
        payload.invoice_id,
        payload.gateway,
        ledger.CheckoutPayload(
            payment_id=gateway_payload.razorpay_payment_id,
            order_id=gateway_payload.razorpay_order_id,
            signature=gateway_payload.razorpay_signature,
        ),
    )
    payment = confirmation.payment
    invoice = confirmation.invoice
    return envelope(
        request,
        {
            "payment_id": payment.id if payment else None,
            "status": payment.status if payment else None,
            "invoice": {"id": invoice.id, "status": invoice.status, "paid_at": invoice.paid_at},
        },
    )
