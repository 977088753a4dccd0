"""Billing app configuration."""

from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

REQUIRED_GATEWAY_SETTINGS = (
    "RAZORPAY_KEY_ID",
    "RAZORPAY_KEY_SECRET",
    "RAZORPAY_WEBHOOK_SECRET",
)


class BillingConfig(AppConfig):
    """Configuration for billing app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.billing"

    def ready(self) -> None:
        # Signature checks are meaningless with an empty secret; refuse to boot
        missing = [name for name in REQUIRED_GATEWAY_SETTINGS if not getattr(settings, name, "")]
        if missing:
            raise ImproperlyConfigured(
                f"Payment gateway is not configured, missing: {', '.join(missing)}"
            )
