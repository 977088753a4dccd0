from decimal import Decimal

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

AUDIENCE_CHOICES = [("owner", "Owner"), ("tenant", "Tenant")]
GATEWAY_CHOICES = [("razorpay", "Razorpay")]


def money(**kwargs):
    return models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12, **kwargs)


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "code",
                    models.CharField(
                        help_text="Public plan code, stored upper-case, e.g. 'OWNER_PRO'",
                        max_length=64,
                        unique=True,
                    ),
                ),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                ("category", models.CharField(blank=True, max_length=100)),
                (
                    "audience",
                    models.CharField(
                        choices=[("owner", "Owner"), ("tenant", "Tenant"), ("both", "Owners and tenants")],
                        max_length=10,
                    ),
                ),
                ("currency", models.CharField(default="INR", max_length=3)),
                (
                    "billing_cycle",
                    models.CharField(
                        choices=[
                            ("monthly", "Monthly"),
                            ("quarterly", "Quarterly"),
                            ("yearly", "Yearly"),
                            ("one-time", "One-time"),
                        ],
                        max_length=20,
                    ),
                ),
                ("price", money()),
                ("setup_fee", money()),
                ("trial_days", models.PositiveIntegerField(default=0)),
                ("is_popular", models.BooleanField(default=False)),
                ("is_published", models.BooleanField(db_index=True, default=False)),
                ("sort_order", models.IntegerField(default=0)),
                ("metadata", models.JSONField(blank=True, default=dict)),
            ],
            options={
                "ordering": ["sort_order", "price"],
                "indexes": [
                    models.Index(fields=["audience", "is_published"], name="plan_audience_published_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PlanFeature",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("feature_key", models.CharField(max_length=100)),
                ("feature_value", models.JSONField(help_text="Any JSON value: number, boolean, string")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="features",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "ordering": ["feature_key"],
                "constraints": [
                    models.UniqueConstraint(fields=("plan", "feature_key"), name="uniq_plan_feature_key"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Coupon",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("code", models.CharField(help_text="Stored upper-case", max_length=64, unique=True)),
                (
                    "kind",
                    models.CharField(choices=[("percent", "Percent"), ("fixed", "Fixed amount")], max_length=10),
                ),
                ("value", money(help_text="Percentage (0-100) or fixed amount")),
                ("currency", models.CharField(default="INR", max_length=3)),
                (
                    "max_redemptions",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Total redemptions across all users. Empty = unlimited.",
                        null=True,
                    ),
                ),
                ("per_user_limit", models.PositiveIntegerField(default=1)),
                ("starts_at", models.DateTimeField()),
                ("ends_at", models.DateTimeField()),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["starts_at", "ends_at"], name="coupon_window_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user_id", models.CharField(db_index=True, max_length=64)),
                ("audience", models.CharField(choices=AUDIENCE_CHOICES, max_length=10)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("trialing", "Trialing"),
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("paused", "Paused"),
                            ("canceled", "Canceled"),
                            ("expired", "Expired"),
                        ],
                        db_index=True,
                        default="trialing",
                        max_length=20,
                    ),
                ),
                ("current_period_start", models.DateTimeField()),
                ("current_period_end", models.DateTimeField()),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("paused_at", models.DateTimeField(blank=True, null=True)),
                ("resume_at", models.DateTimeField(blank=True, null=True)),
                (
                    "proration_behavior",
                    models.CharField(
                        choices=[("create_prorations", "Create prorations"), ("none", "None")],
                        default="create_prorations",
                        max_length=20,
                    ),
                ),
                ("gateway", models.CharField(choices=GATEWAY_CHOICES, default="razorpay", max_length=20)),
                (
                    "gateway_subscription_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Razorpay subscription id, e.g. 'sub_xxx'",
                        max_length=255,
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "coupon",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="subscriptions",
                        to="billing.coupon",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user_id", "audience"], name="subscription_user_aud_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(status__in=["active", "trialing"]),
                        fields=("user_id", "audience"),
                        name="uniq_live_subscription_per_audience",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionUsage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("metric", models.CharField(max_length=100)),
                ("used", models.PositiveBigIntegerField(default=0)),
                ("period_start", models.DateTimeField()),
                ("period_end", models.DateTimeField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="usage_records",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(
                        fields=("subscription", "metric", "period_start"),
                        name="uniq_usage_per_period",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CouponRedemption",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("user_id", models.CharField(max_length=64)),
                ("redeemed_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "coupon",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="redemptions",
                        to="billing.coupon",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="coupon_redemptions",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-redeemed_at"],
                "indexes": [
                    models.Index(fields=["coupon", "user_id"], name="redemption_coupon_user_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=50, unique=True)),
                ("last_value", models.PositiveBigIntegerField(default=0)),
            ],
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user_id", models.CharField(max_length=64)),
                ("invoice_no", models.CharField(max_length=32, unique=True)),
                ("currency", models.CharField(default="INR", max_length=3)),
                ("subtotal", money()),
                ("discount", money()),
                ("tax_percent", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=5)),
                ("tax", money()),
                ("total", money()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("paid", "Paid"),
                            ("void", "Void"),
                            ("refunded", "Refunded"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("issued_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("due_at", models.DateTimeField()),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user_id", "status"], name="invoice_user_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("description", models.CharField(max_length=255)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("unit_price", money()),
                ("line_total", money()),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="billing.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user_id", models.CharField(max_length=64)),
                ("gateway", models.CharField(choices=GATEWAY_CHOICES, default="razorpay", max_length=20)),
                (
                    "gateway_order_id",
                    models.CharField(help_text="Razorpay order id, e.g. 'order_xxx'", max_length=255, unique=True),
                ),
                (
                    "gateway_payment_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Razorpay payment id, e.g. 'pay_xxx'",
                        max_length=255,
                    ),
                ),
                ("amount", money()),
                ("currency", models.CharField(default="INR", max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("authorized", "Authorized"),
                            ("captured", "Captured"),
                            ("failed", "Failed"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="created",
                        max_length=20,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="billing.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(status__in=["created", "authorized"]),
                        fields=("invoice",),
                        name="uniq_open_payment_per_invoice",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("gateway", models.CharField(choices=GATEWAY_CHOICES, max_length=20)),
                ("event_type", models.CharField(max_length=100)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("payload", models.JSONField()),
                ("signature", models.CharField(blank=True, max_length=255)),
                ("processed", models.BooleanField(db_index=True, default=False)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["gateway", "event_type"], name="webhook_gateway_type_idx"),
                ],
            },
        ),
    ]
