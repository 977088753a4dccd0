"""
Billing API schemas - request/response types for billing endpoints.

Amounts are serialized as decimal strings with two places, e.g. "999.50".
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Literal

from django.utils import timezone
from ninja import Schema
from pydantic import Field, field_validator

BillingCycleLiteral = Literal["monthly", "quarterly", "yearly", "one-time"]


# --- Catalog ---


class PlanFeatureOut(Schema):
    feature_key: str
    feature_value: Any


class PlanOut(Schema):
    """Published plan with its feature grants."""

    code: str
    name: str
    description: str
    category: str
    audience: str  # 'owner', 'tenant', 'both'
    currency: str
    billing_cycle: str
    price: Decimal
    setup_fee: Decimal
    trial_days: int
    is_popular: bool
    features: list[PlanFeatureOut]


class PlanSummaryOut(Schema):
    code: str
    name: str
    price: Decimal
    billing_cycle: str


# --- Subscriptions ---


class SubscribeRequest(Schema):
    """Request to purchase a plan."""

    plan_code: str = Field(..., min_length=1, max_length=64)
    billing_cycle: BillingCycleLiteral | None = None  # Defaults to the plan's cycle
    coupon_code: str | None = Field(default=None, max_length=64)
    trial_override_days: int | None = Field(default=None, ge=0, le=365)
    proration_behavior: Literal["create_prorations", "none"] = "create_prorations"
    start_now: bool = True
    payment_gateway: str | None = None


class SubscriptionOut(Schema):
    id: int
    status: str
    audience: str
    plan: PlanSummaryOut
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    canceled_at: datetime | None
    paused_at: datetime | None
    resume_at: datetime | None
    proration_behavior: str
    gateway: str
    coupon_code: str | None = None


class CancelSubscriptionRequest(Schema):
    cancel_at_period_end: bool = True  # False cancels immediately


class PauseSubscriptionRequest(Schema):
    resume_at: datetime | None = None

    @field_validator("resume_at")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and timezone.is_naive(value):
            return timezone.make_aware(value, UTC)
        return value


class EntitledSubscriptionOut(Schema):
    id: int
    status: str
    plan: str
    current_period_end: datetime


class EntitlementsOut(Schema):
    """Feature map granted by the caller's live subscription."""

    has_active_subscription: bool
    subscription: EntitledSubscriptionOut | None = None
    features: dict[str, Any]


class UsageRequest(Schema):
    metric: str = Field(..., min_length=1, max_length=100)
    quantity: int = Field(default=1, ge=1)


class UsageOut(Schema):
    metric: str
    used: int
    period_start: datetime
    period_end: datetime


# --- Invoices & payments ---


class InvoiceItemOut(Schema):
    description: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class InvoiceOut(Schema):
    id: int
    invoice_no: str
    status: str  # 'pending', 'paid', 'void', 'refunded'
    currency: str
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    issued_at: datetime
    due_at: datetime
    paid_at: datetime | None
    subscription_id: int | None
    items: list[InvoiceItemOut]


class SubscribeResponse(Schema):
    subscription: SubscriptionOut
    invoice: InvoiceOut


class PaginationOut(Schema):
    current: int
    total: int  # Number of pages
    has_next: bool


class InvoiceListResponse(Schema):
    invoices: list[InvoiceOut]
    pagination: PaginationOut


class PaymentInitRequest(Schema):
    invoice_id: int
    gateway: str | None = None  # Defaults to the configured gateway


class PaymentInitResponse(Schema):
    """Gateway order the client opens checkout with."""

    payment_id: int
    status: str
    gateway: str
    gateway_order_id: str
    gateway_key_id: str
    amount: Decimal
    currency: str
    invoice_no: str


class CheckoutPayloadIn(Schema):
    """Fields returned by Razorpay checkout on success."""

    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_order_id: str = ""
    razorpay_signature: str = ""


class PaymentConfirmRequest(Schema):
    invoice_id: int
    gateway: str = "razorpay"
    payload_from_gateway: CheckoutPayloadIn


class ConfirmedInvoiceOut(Schema):
    id: int
    status: str
    paid_at: datetime | None


class PaymentConfirmResponse(Schema):
    payment_id: int | None
    status: str | None
    invoice: ConfirmedInvoiceOut
