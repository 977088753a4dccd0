"""
Invoice and payment ledger.

Invoices are created once per billing event; payments are attempts against
an invoice. Status changes only move forward and every transition checks the
current status under a row lock, so the synchronous confirm call and the
gateway webhook can both apply the same capture safely.

External calls must NOT be inside database transactions.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from apps.billing import gateway_client
from apps.billing.exceptions import (
    InvalidSignature,
    InvoiceNotFound,
    InvoiceNotPending,
    PaymentNotFound,
    UnsupportedGateway,
)
from apps.billing.models import (
    ZERO,
    BillingCycle,
    Gateway,
    Invoice,
    InvoiceItem,
    InvoiceSequence,
    Payment,
    Plan,
    Subscription,
)
from apps.core.logging import get_logger

logger = get_logger(__name__)

INVOICE_SEQUENCE = "invoice"
INVOICE_NUMBER_FORMAT = "INV-{:06d}"


@dataclass(frozen=True)
class CheckoutPayload:
    """Fields the Razorpay checkout hands back to the client after payment."""

    payment_id: str
    order_id: str
    signature: str


@dataclass(frozen=True)
class PaymentConfirmation:
    """Outcome of a confirm call: the payment that settled the invoice."""

    payment: Payment | None
    invoice: Invoice


def ensure_supported_gateway(gateway: str) -> str:
    """
    Raises:
        UnsupportedGateway: If ``gateway`` is not a configured payment gateway
    """
    if gateway not in Gateway.values:
        raise UnsupportedGateway(f"Payment gateway '{gateway}' is not supported")
    return gateway


def next_invoice_number() -> str:
    """Allocate the next invoice number from the atomic counter."""
    with transaction.atomic():
        sequence, _ = InvoiceSequence.objects.select_for_update().get_or_create(
            name=INVOICE_SEQUENCE
        )
        InvoiceSequence.objects.filter(pk=sequence.pk).update(last_value=F("last_value") + 1)
        sequence.refresh_from_db(fields=["last_value"])
    return INVOICE_NUMBER_FORMAT.format(sequence.last_value)


@transaction.atomic
def create_invoice_for_subscription(
    subscription: Subscription,
    plan: Plan,
    discount: Decimal = ZERO,
    billing_cycle: str | None = None,
) -> Invoice:
    """
    Create the pending invoice for a new subscription.

    One line item for the plan charge, plus one for the setup fee when the
    plan has one. The discount is applied to the invoice total, which never
    goes below zero.
    """
    cycle = billing_cycle or plan.billing_cycle
    subtotal = plan.price + plan.setup_fee
    tax = ZERO
    now = timezone.now()

    invoice = Invoice.objects.create(
        user_id=subscription.user_id,
        subscription=subscription,
        invoice_no=next_invoice_number(),
        currency=plan.currency,
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=Invoice.compute_total(subtotal, tax, discount),
        issued_at=now,
        due_at=now + timedelta(days=settings.INVOICE_DUE_DAYS),
    )

    items = [
        InvoiceItem(
            invoice=invoice,
            description=f"{plan.name} ({BillingCycle(cycle).label})",
            quantity=1,
            unit_price=plan.price,
            line_total=plan.price,
            metadata={"plan_code": plan.code, "billing_cycle": cycle},
        )
    ]
    if plan.setup_fee > ZERO:
        items.append(
            InvoiceItem(
                invoice=invoice,
                description="Setup fee",
                quantity=1,
                unit_price=plan.setup_fee,
                line_total=plan.setup_fee,
                metadata={"plan_code": plan.code},
            )
        )
    InvoiceItem.objects.bulk_create(items)

    logger.info(
        "invoice_created",
        invoice_no=invoice.invoice_no,
        subscription_id=subscription.id,
        total=str(invoice.total),
    )
    return invoice


def _locked_user_invoice(user_id: str, invoice_id: int) -> Invoice:
    try:
        return Invoice.objects.select_for_update().get(id=invoice_id, user_id=user_id)
    except Invoice.DoesNotExist:
        raise InvoiceNotFound() from None


def _open_payment(invoice: Invoice) -> Payment | None:
    return (
        Payment.objects.select_for_update()
        .filter(invoice=invoice, status__in=Payment.OPEN_STATUSES)
        .first()
    )


def initialize_payment(user_id: str, invoice_id: int, gateway: str | None = None) -> Payment:
    """
    Start a payment attempt for a pending invoice.

    Re-uses the invoice's open payment when one exists; otherwise creates a
    gateway order for the invoice total and records a ``created`` payment.

    Raises:
        InvoiceNotFound: Invoice missing or owned by another user
        InvoiceNotPending: Invoice is already paid, void or refunded
        GatewayError: Order creation failed at the gateway
    """
    gateway = ensure_supported_gateway(gateway or settings.BILLING_DEFAULT_GATEWAY)

    with transaction.atomic():
        invoice = _locked_user_invoice(user_id, invoice_id)
        if invoice.status != Invoice.Status.PENDING:
            raise InvoiceNotPending()
        existing = _open_payment(invoice)
        if existing is not None:
            logger.info("payment_reused", payment_id=existing.id, invoice_no=invoice.invoice_no)
            return existing

    order = gateway_client.create_order(
        amount=invoice.total,
        currency=invoice.currency,
        metadata={"receipt": invoice.invoice_no, "invoice_id": invoice.id, "user_id": user_id},
    )

    with transaction.atomic():
        invoice = _locked_user_invoice(user_id, invoice_id)
        if invoice.status != Invoice.Status.PENDING:
            raise InvoiceNotPending()
        existing = _open_payment(invoice)
        if existing is not None:
            logger.info(
                "payment_order_superseded",
                order_id=order.order_id,
                payment_id=existing.id,
            )
            return existing

        try:
            with transaction.atomic():
                payment = Payment.objects.create(
                    invoice=invoice,
                    user_id=user_id,
                    gateway=gateway,
                    gateway_order_id=order.order_id,
                    amount=invoice.total,
                    currency=invoice.currency,
                    metadata={"receipt": invoice.invoice_no},
                )
        except IntegrityError:
            payment = _open_payment(invoice)
            if payment is None:
                raise

    logger.info(
        "payment_initialized",
        payment_id=payment.id,
        order_id=payment.gateway_order_id,
        invoice_no=invoice.invoice_no,
    )
    return payment


def confirm_payment(
    user_id: str,
    invoice_id: int,
    gateway: str,
    payload: CheckoutPayload,
) -> PaymentConfirmation:
    """
    Confirm a checkout synchronously from the client's gateway payload.

    An invoice that is already paid (by an earlier confirm or by the
    webhook) is returned as is. A bad signature fails the payment; the
    failure is committed before InvalidSignature is raised.

    Raises:
        InvoiceNotFound: Invoice missing or owned by another user
        PaymentNotFound: No open payment exists for the invoice
        InvalidSignature: Checkout signature does not match
    """
    ensure_supported_gateway(gateway)

    with transaction.atomic():
        invoice = _locked_user_invoice(user_id, invoice_id)
        if invoice.is_paid:
            logger.info("payment_confirm_already_paid", invoice_no=invoice.invoice_no)
            captured = invoice.payments.filter(status=Payment.Status.CAPTURED).first()
            return PaymentConfirmation(payment=captured, invoice=invoice)

        payment = _open_payment(invoice)
        if payment is None:
            raise PaymentNotFound()

        verified = gateway_client.verify_checkout_signature(
            payment.gateway_order_id,
            payload.payment_id,
            payload.signature,
        )
        if verified:
            mark_payment_captured(
                payment,
                gateway_payment_id=payload.payment_id,
                metadata={"razorpay_signature": payload.signature},
            )
        else:
            mark_payment_failed(payment, "Invalid signature")

    if not verified:
        logger.warning("payment_signature_invalid", payment_id=payment.id)
        raise InvalidSignature("Payment verification failed")

    invoice.refresh_from_db()
    payment.refresh_from_db()
    return PaymentConfirmation(payment=payment, invoice=invoice)


def find_payment_by_order(order_id: str) -> Payment:
    """
    Raises:
        PaymentNotFound: If no payment carries this gateway order id
    """
    try:
        return Payment.objects.select_related("invoice").get(gateway_order_id=order_id)
    except Payment.DoesNotExist:
        raise PaymentNotFound(f"No payment for order {order_id}") from None


@transaction.atomic
def mark_payment_captured(
    payment: Payment,
    gateway_payment_id: str = "",
    metadata: dict[str, Any] | None = None,
) -> bool:
    """
    Capture a payment and settle its invoice and subscription.

    Returns:
        True if this call captured the payment, False if it was already
        captured or had reached another terminal status
    """
    from apps.billing.services import activate_after_payment

    payment = Payment.objects.select_for_update().get(pk=payment.pk)
    if payment.status == Payment.Status.CAPTURED:
        logger.info("payment_already_captured", payment_id=payment.id)
        return False
    if not payment.is_open:
        logger.warning(
            "payment_capture_ignored",
            payment_id=payment.id,
            status=payment.status,
        )
        return False

    payment.status = Payment.Status.CAPTURED
    if gateway_payment_id:
        payment.gateway_payment_id = gateway_payment_id
    payment.metadata = {**payment.metadata, **(metadata or {})}
    payment.save(update_fields=["status", "gateway_payment_id", "metadata", "updated_at"])

    invoice = Invoice.objects.select_for_update().get(pk=payment.invoice_id)
    if invoice.status == Invoice.Status.PENDING:
        invoice.status = Invoice.Status.PAID
        invoice.paid_at = timezone.now()
        invoice.save(update_fields=["status", "paid_at", "updated_at"])

    if invoice.subscription_id:
        activate_after_payment(invoice.subscription_id)

    logger.info(
        "payment_captured",
        payment_id=payment.id,
        invoice_no=invoice.invoice_no,
        amount=str(payment.amount),
    )
    return True


@transaction.atomic
def mark_payment_failed(payment: Payment, reason: str) -> bool:
    """
    Fail an open payment.

    Returns:
        True if this call failed the payment, False if it was no longer open
    """
    payment = Payment.objects.select_for_update().get(pk=payment.pk)
    if not payment.is_open:
        logger.info("payment_failure_ignored", payment_id=payment.id, status=payment.status)
        return False

    payment.status = Payment.Status.FAILED
    payment.failure_reason = reason
    payment.save(update_fields=["status", "failure_reason", "updated_at"])
    logger.warning("payment_failed", payment_id=payment.id, reason=reason)
    return True


@transaction.atomic
def mark_payment_authorized(payment: Payment, gateway_payment_id: str = "") -> bool:
    """
    Move a freshly created payment to ``authorized``.

    Returns:
        True if the payment moved, False if it was past ``created``
    """
    payment = Payment.objects.select_for_update().get(pk=payment.pk)
    if payment.status != Payment.Status.CREATED:
        return False

    payment.status = Payment.Status.AUTHORIZED
    if gateway_payment_id:
        payment.gateway_payment_id = gateway_payment_id
    payment.save(update_fields=["status", "gateway_payment_id", "updated_at"])
    logger.info("payment_authorized", payment_id=payment.id)
    return True


def list_invoices(
    user_id: str,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Invoice], int]:
    """
    List a user's invoices, newest first.

    Returns:
        Tuple of (invoices on the requested page, total matching invoices)
    """
    queryset = Invoice.objects.filter(user_id=user_id).select_related("subscription__plan")
    if status:
        queryset = queryset.filter(status=status)

    total = queryset.count()
    offset = (page - 1) * limit
    queryset = queryset.order_by("-created_at", "-id").prefetch_related("items")
    return list(queryset[offset : offset + limit]), total


def get_invoice(user_id: str, invoice_id: int) -> Invoice:
    """
    Raises:
        InvoiceNotFound: Invoice missing or owned by another user
    """
    try:
        return (
            Invoice.objects.select_related("subscription__plan")
            .prefetch_related("items")
            .get(id=invoice_id, user_id=user_id)
        )
    except Invoice.DoesNotExist:
        raise InvoiceNotFound() from None
