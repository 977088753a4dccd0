"""
Admin configuration for billing app.

Plans and coupons are managed here. Subscriptions, invoices, payments and
webhook events are written by the billing services and shown read-only.
"""

from django.contrib import admin
from django.db.models import Count, QuerySet
from django.http import HttpRequest

from apps.billing.models import (
    Coupon,
    Invoice,
    InvoiceItem,
    Payment,
    Plan,
    PlanFeature,
    Subscription,
    WebhookEvent,
)


class PlanFeatureInline(admin.TabularInline):
    model = PlanFeature
    extra = 1


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    """Admin for subscription plans."""

    list_display = [
        "code",
        "name",
        "audience",
        "billing_cycle",
        "price",
        "setup_fee",
        "trial_days",
        "is_published",
        "sort_order",
    ]
    list_filter = ["audience", "billing_cycle", "is_published", "is_popular"]
    search_fields = ["code", "name"]
    ordering = ["sort_order", "price"]
    inlines = [PlanFeatureInline]
    actions = ["publish", "unpublish"]

    @admin.action(description="Publish selected plans")
    def publish(self, request: HttpRequest, queryset: QuerySet[Plan]) -> None:
        updated = queryset.update(is_published=True)
        self.message_user(request, f"Published {updated} plan(s).")

    @admin.action(description="Unpublish selected plans")
    def unpublish(self, request: HttpRequest, queryset: QuerySet[Plan]) -> None:
        updated = queryset.update(is_published=False)
        self.message_user(request, f"Unpublished {updated} plan(s).")


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    """Admin for coupons."""

    list_display = [
        "code",
        "kind",
        "value",
        "starts_at",
        "ends_at",
        "max_redemptions",
        "per_user_limit",
        "redemption_count",
        "is_active",
    ]
    list_filter = ["kind", "is_active"]
    search_fields = ["code"]

    def get_queryset(self, request: HttpRequest) -> QuerySet[Coupon]:
        return super().get_queryset(request).annotate(_redemption_count=Count("redemptions"))

    @admin.display(description="Redeemed", ordering="_redemption_count")
    def redemption_count(self, obj: Coupon) -> int:
        return obj._redemption_count


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Admin for viewing subscriptions."""

    list_display = [
        "id",
        "user_id",
        "audience",
        "plan",
        "status",
        "current_period_end",
        "cancel_at_period_end",
        "created_at",
    ]
    list_filter = ["status", "audience", "gateway"]
    search_fields = ["user_id", "gateway_subscription_id", "plan__code"]
    raw_id_fields = ["plan", "coupon"]
    readonly_fields = ["created_at", "updated_at"]
    date_hierarchy = "created_at"


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0
    readonly_fields = ["description", "quantity", "unit_price", "line_total", "metadata"]
    can_delete = False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    """Admin for invoices."""

    list_display = ["invoice_no", "user_id", "status", "total", "currency", "due_at", "paid_at"]
    list_filter = ["status", "currency"]
    search_fields = ["invoice_no", "user_id"]
    raw_id_fields = ["subscription"]
    readonly_fields = [
        "invoice_no",
        "subtotal",
        "discount",
        "tax",
        "total",
        "issued_at",
        "paid_at",
        "created_at",
    ]
    inlines = [InvoiceItemInline]
    date_hierarchy = "issued_at"


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    """Admin for payment attempts."""

    list_display = [
        "id",
        "gateway_order_id",
        "gateway_payment_id",
        "invoice",
        "status",
        "amount",
        "created_at",
    ]
    list_filter = ["status", "gateway"]
    search_fields = ["gateway_order_id", "gateway_payment_id", "user_id"]
    raw_id_fields = ["invoice"]
    readonly_fields = ["gateway_order_id", "amount", "currency", "created_at", "updated_at"]

    def has_add_permission(self, request: HttpRequest) -> bool:
        """Payments are created through gateway checkout, not admin."""
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """Admin for inspecting gateway webhook deliveries."""

    list_display = ["event_id", "gateway", "event_type", "processed", "has_error", "created_at"]
    list_filter = ["gateway", "event_type", "processed"]
    search_fields = ["event_id"]
    readonly_fields = [
        "gateway",
        "event_type",
        "event_id",
        "payload",
        "signature",
        "processed",
        "processed_at",
        "last_error",
        "created_at",
    ]
    ordering = ["-created_at"]

    @admin.display(description="Error", boolean=True)
    def has_error(self, obj: WebhookEvent) -> bool:
        return bool(obj.last_error)

    def has_add_permission(self, request: HttpRequest) -> bool:
        """Webhook events are recorded by the webhook endpoint, not admin."""
        return False

    def has_change_permission(self, request: HttpRequest, obj=None) -> bool:
        """Webhook events are immutable."""
        return False
