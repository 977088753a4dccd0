"""
Billing models - plans, coupons, subscriptions, invoices and Razorpay payments.

Plans and coupons are managed by administrators. Everything else is written
by the billing services and only ever moves forward through its status
lifecycle; rows are never deleted to undo a transition.
"""

from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.auth import Audience
from apps.core.models import TimestampedModel

MONEY_MAX_DIGITS = 12
MONEY_DECIMAL_PLACES = 2
ZERO = Decimal("0.00")


def money_field(**kwargs) -> models.DecimalField:
    """Decimal column used for every amount."""
    kwargs.setdefault("default", ZERO)
    return models.DecimalField(
        max_digits=MONEY_MAX_DIGITS,
        decimal_places=MONEY_DECIMAL_PLACES,
        **kwargs,
    )


class BillingCycle(models.TextChoices):
    MONTHLY = "monthly", "Monthly"
    QUARTERLY = "quarterly", "Quarterly"
    YEARLY = "yearly", "Yearly"
    ONE_TIME = "one-time", "One-time"


class Gateway(models.TextChoices):
    RAZORPAY = "razorpay", "Razorpay"


class PlanAudience(models.TextChoices):
    """Which marketplace side may purchase a plan."""

    OWNER = "owner", "Owner"
    TENANT = "tenant", "Tenant"
    BOTH = "both", "Owners and tenants"


class Plan(TimestampedModel):
    """
    Purchasable subscription plan.

    Treated as immutable by the billing engine; price changes are published as
    a new plan code.
    """

    code = models.CharField(
        max_length=64,
        unique=True,
        help_text="Public plan code, stored upper-case, e.g. 'OWNER_PRO'",
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=100, blank=True)
    audience = models.CharField(max_length=10, choices=PlanAudience.choices)
    currency = models.CharField(max_length=3, default="INR")
    billing_cycle = models.CharField(max_length=20, choices=BillingCycle.choices)
    price = money_field()
    setup_fee = money_field()
    trial_days = models.PositiveIntegerField(default=0)
    is_popular = models.BooleanField(default=False)
    is_published = models.BooleanField(default=False, db_index=True)
    sort_order = models.IntegerField(default=0)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["sort_order", "price"]
        indexes = [
            models.Index(fields=["audience", "is_published"], name="plan_audience_published_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.code} ({self.audience})"

    def save(self, *args, **kwargs) -> None:
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    def is_available_to(self, audience: Audience) -> bool:
        """Check whether users acting as ``audience`` may buy this plan."""
        if self.audience == PlanAudience.BOTH:
            return True
        match audience:
            case Audience.OWNER:
                return self.audience == PlanAudience.OWNER
            case Audience.TENANT:
                return self.audience == PlanAudience.TENANT
        raise ValueError(f"Unknown audience: {audience!r}")


class PlanFeature(models.Model):
    """Feature grant attached to a plan, e.g. max_listings=10."""

    plan = models.ForeignKey(Plan, on_delete=models.CASCADE, related_name="features")
    feature_key = models.CharField(max_length=100)
    feature_value = models.JSONField(help_text="Any JSON value: number, boolean, string")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["feature_key"]
        constraints = [
            models.UniqueConstraint(fields=["plan", "feature_key"], name="uniq_plan_feature_key"),
        ]

    def __str__(self) -> str:
        return f"{self.plan.code}:{self.feature_key}"


class Coupon(TimestampedModel):
    """Discount code with a validity window and redemption limits."""

    class Kind(models.TextChoices):
        PERCENT = "percent", "Percent"
        FIXED = "fixed", "Fixed amount"

    code = models.CharField(max_length=64, unique=True, help_text="Stored upper-case")
    kind = models.CharField(max_length=10, choices=Kind.choices)
    value = money_field(help_text="Percentage (0-100) or fixed amount")
    currency = models.CharField(max_length=3, default="INR")
    max_redemptions = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Total redemptions across all users. Empty = unlimited.",
    )
    per_user_limit = models.PositiveIntegerField(default=1)
    starts_at = models.DateTimeField()
    ends_at = models.DateTimeField()
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["starts_at", "ends_at"], name="coupon_window_idx"),
        ]

    def __str__(self) -> str:
        return self.code

    def save(self, *args, **kwargs) -> None:
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    def clean(self) -> None:
        if self.value is not None and self.value < 0:
            raise ValidationError({"value": "Coupon value cannot be negative."})
        if self.kind == Coupon.Kind.PERCENT and self.value is not None and self.value > 100:
            raise ValidationError({"value": "Percent coupons cannot exceed 100."})
        if self.starts_at and self.ends_at and self.ends_at < self.starts_at:
            raise ValidationError({"ends_at": "End date must be after start date."})

    def is_redeemable_at(self, moment) -> bool:
        """Active and inside its validity window."""
        return self.is_active and self.starts_at <= moment <= self.ends_at


class Subscription(TimestampedModel):
    """
    A user's subscription to a plan, for one side of the marketplace.

    At most one subscription per (user, audience) may be live (active or
    trialing); enforced by a partial unique constraint.
    """

    class Status(models.TextChoices):
        TRIALING = "trialing", "Trialing"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past Due"
        PAUSED = "paused", "Paused"
        CANCELED = "canceled", "Canceled"
        EXPIRED = "expired", "Expired"

    class ProrationBehavior(models.TextChoices):
        CREATE_PRORATIONS = "create_prorations", "Create prorations"
        NONE = "none", "None"

    LIVE_STATUSES = (Status.ACTIVE, Status.TRIALING)
    TERMINAL_STATUSES = (Status.CANCELED, Status.EXPIRED)

    user_id = models.CharField(max_length=64, db_index=True)
    audience = models.CharField(max_length=10, choices=Audience.choices)
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="subscriptions")
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.TRIALING,
        db_index=True,
    )
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    cancel_at_period_end = models.BooleanField(default=False)
    canceled_at = models.DateTimeField(null=True, blank=True)
    paused_at = models.DateTimeField(null=True, blank=True)
    resume_at = models.DateTimeField(null=True, blank=True)
    proration_behavior = models.CharField(
        max_length=20,
        choices=ProrationBehavior.choices,
        default=ProrationBehavior.CREATE_PRORATIONS,
    )
    gateway = models.CharField(max_length=20, choices=Gateway.choices, default=Gateway.RAZORPAY)
    gateway_subscription_id = models.CharField(
        max_length=255,
        blank=True,
        db_index=True,
        help_text="Razorpay subscription id, e.g. 'sub_xxx'",
    )
    coupon = models.ForeignKey(
        Coupon,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscriptions",
    )
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user_id", "audience"], name="subscription_user_aud_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["user_id", "audience"],
                condition=Q(status__in=["active", "trialing"]),
                name="uniq_live_subscription_per_audience",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user_id}/{self.audience} - {self.plan.code} ({self.status})"

    @property
    def is_live(self) -> bool:
        """Check if subscription currently grants plan features."""
        return self.status in self.LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def coupon_code(self) -> str | None:
        return self.coupon.code if self.coupon_id else None


class SubscriptionUsage(models.Model):
    """Metered usage for one metric within a subscription billing period."""

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        related_name="usage_records",
    )
    metric = models.CharField(max_length=100)
    used = models.PositiveBigIntegerField(default=0)
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["subscription", "metric", "period_start"],
                name="uniq_usage_per_period",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.subscription_id}:{self.metric}={self.used}"


class CouponRedemption(models.Model):
    """
    Append-only record of a coupon being used for a subscription.

    Row counts are the source of truth for redemption limits; rows are never
    updated or deleted.
    """

    coupon = models.ForeignKey(Coupon, on_delete=models.PROTECT, related_name="redemptions")
    user_id = models.CharField(max_length=64)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="coupon_redemptions",
    )
    redeemed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-redeemed_at"]
        indexes = [
            models.Index(fields=["coupon", "user_id"], name="redemption_coupon_user_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.coupon.code} by {self.user_id}"


class InvoiceSequence(models.Model):
    """
    Named monotonically increasing counter used for invoice numbers.

    Incremented with a row lock inside the invoice-creating transaction, so
    concurrent invoices never share a number.
    """

    name = models.CharField(max_length=50, unique=True)
    last_value = models.PositiveBigIntegerField(default=0)

    def __str__(self) -> str:
        return f"{self.name}={self.last_value}"


class Invoice(TimestampedModel):
    """Invoice for one billing event of a subscription."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PAID = "paid", "Paid"
        VOID = "void", "Void"
        REFUNDED = "refunded", "Refunded"

    user_id = models.CharField(max_length=64)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="invoices",
    )
    invoice_no = models.CharField(max_length=32, unique=True)
    currency = models.CharField(max_length=3, default="INR")
    subtotal = money_field()
    discount = money_field()
    tax_percent = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO)
    tax = money_field()
    total = money_field()
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
    )
    issued_at = models.DateTimeField(default=timezone.now)
    due_at = models.DateTimeField()
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user_id", "status"], name="invoice_user_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.invoice_no} ({self.status})"

    @staticmethod
    def compute_total(subtotal: Decimal, tax: Decimal, discount: Decimal) -> Decimal:
        """Invoice total, never negative."""
        return max(ZERO, subtotal + tax - discount)

    @property
    def is_paid(self) -> bool:
        return self.status == self.Status.PAID


class InvoiceItem(models.Model):
    """Line item on an invoice. Line totals sum to the invoice subtotal."""

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    description = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(default=1)
    unit_price = money_field()
    line_total = money_field()
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:
        return f"{self.description} x{self.quantity}"


class Payment(TimestampedModel):
    """
    Payment attempt against an invoice through the gateway.

    Only one attempt per invoice may be open (created or authorized) at a
    time; captured, failed and refunded are terminal.
    """

    class Status(models.TextChoices):
        CREATED = "created", "Created"
        AUTHORIZED = "authorized", "Authorized"
        CAPTURED = "captured", "Captured"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"

    OPEN_STATUSES = (Status.CREATED, Status.AUTHORIZED)

    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="payments")
    user_id = models.CharField(max_length=64)
    gateway = models.CharField(max_length=20, choices=Gateway.choices, default=Gateway.RAZORPAY)
    gateway_order_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Razorpay order id, e.g. 'order_xxx'",
    )
    gateway_payment_id = models.CharField(
        max_length=255,
        blank=True,
        db_index=True,
        help_text="Razorpay payment id, e.g. 'pay_xxx'",
    )
    amount = money_field()
    currency = models.CharField(max_length=3, default="INR")
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.CREATED,
        db_index=True,
    )
    failure_reason = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["invoice"],
                condition=Q(status__in=["created", "authorized"]),
                name="uniq_open_payment_per_invoice",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.gateway_order_id} ({self.status})"

    @property
    def is_open(self) -> bool:
        return self.status in self.OPEN_STATUSES


class WebhookEvent(models.Model):
    """
    Verified gateway webhook delivery.

    Serves as audit log and as the de-duplication guard for redelivered
    events: ``event_id`` is the gateway's own idempotency key.
    """

    gateway = models.CharField(max_length=20, choices=Gateway.choices)
    event_type = models.CharField(max_length=100)
    event_id = models.CharField(max_length=255, unique=True)
    payload = models.JSONField()
    signature = models.CharField(max_length=255, blank=True)
    processed = models.BooleanField(default=False, db_index=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["gateway", "event_type"], name="webhook_gateway_type_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.gateway}:{self.event_type}:{self.event_id}"
