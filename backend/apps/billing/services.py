"""
Subscription lifecycle services.

Owns the subscription state machine:

    create  -> trialing (trial days > 0) | active
    active  -> paused              (pause)
    paused  -> active              (resume)
    trialing|active -> canceled    (cancel now) or flagged cancel_at_period_end
    trialing|past_due -> active    (payment captured)
    any non-terminal -> past_due   (gateway reports failed recurring charge)
    any -> canceled                (gateway cancels the subscription)

Wrong-state requests raise InvalidSubscriptionState; nothing is ever a silent
no-op for a client call. Gateway-driven transitions are idempotent instead.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, QuerySet
from django.utils import timezone

from apps.billing.catalog import ensure_plan_available, feature_map, find_published_plan
from apps.billing.coupons import price_coupon, redeem
from apps.billing.exceptions import (
    ActiveSubscriptionExists,
    InvalidSubscriptionState,
    NoActiveSubscription,
    SubscriptionNotFound,
)
from apps.billing.ledger import create_invoice_for_subscription, ensure_supported_gateway
from apps.billing.models import (
    ZERO,
    BillingCycle,
    Invoice,
    Subscription,
    SubscriptionUsage,
)
from apps.core.auth import AuthContext
from apps.core.exceptions import ValidationFailed
from apps.core.logging import get_logger

logger = get_logger(__name__)

PERIOD_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.YEARLY: 365,
}
# One-time plans still get a period so entitlements have an end date
DEFAULT_PERIOD_DAYS = 30
DEFERRED_START = timedelta(hours=24)


@dataclass(frozen=True)
class SubscribeOptions:
    """Caller's purchase options; unset values fall back to the plan's."""

    plan_code: str
    billing_cycle: str | None = None
    coupon_code: str | None = None
    trial_override_days: int | None = None
    proration_behavior: str = Subscription.ProrationBehavior.CREATE_PRORATIONS
    start_now: bool = True
    payment_gateway: str | None = None


@dataclass(frozen=True)
class Entitlements:
    """Feature grants of the caller's live subscription, if any."""

    subscription: Subscription | None
    features: dict[str, Any]

    @property
    def has_active_subscription(self) -> bool:
        return self.subscription is not None


def period_length(billing_cycle: str) -> timedelta:
    """Length of one billing period for ``billing_cycle``."""
    return timedelta(days=PERIOD_DAYS.get(billing_cycle, DEFAULT_PERIOD_DAYS))


def _user_subscriptions(identity: AuthContext) -> QuerySet[Subscription]:
    return Subscription.objects.filter(user_id=identity.user_id, audience=identity.audience)


def _live_subscriptions(identity: AuthContext) -> QuerySet[Subscription]:
    return _user_subscriptions(identity).filter(status__in=Subscription.LIVE_STATUSES)


def subscribe(identity: AuthContext, request: SubscribeOptions) -> tuple[Subscription, Invoice]:
    """
    Purchase a plan: create the subscription and its pending invoice.

    The subscription, the coupon redemption and the invoice are written in one
    transaction.

    Raises:
        PlanNotFound: Unknown or unpublished plan code
        InvalidAudience: Plan is not sold to the caller's audience
        ActiveSubscriptionExists: Caller already has a live subscription
        InvalidCoupon, CouponLimitExceeded, UserCouponLimitExceeded: Coupon rejected
        UnsupportedGateway: Unknown payment gateway
    """
    gateway = ensure_supported_gateway(
        request.payment_gateway or settings.BILLING_DEFAULT_GATEWAY
    )
    billing_cycle = request.billing_cycle
    if billing_cycle is not None and billing_cycle not in BillingCycle.values:
        raise ValidationFailed(f"Unknown billing cycle '{billing_cycle}'")

    plan = find_published_plan(request.plan_code)
    ensure_plan_available(plan, identity.audience)
    billing_cycle = billing_cycle or plan.billing_cycle

    with transaction.atomic():
        if _live_subscriptions(identity).exists():
            raise ActiveSubscriptionExists()

        quote = None
        if request.coupon_code:
            quote = price_coupon(request.coupon_code, plan, identity.user_id)

        trial_days = (
            request.trial_override_days
            if request.trial_override_days is not None
            else plan.trial_days
        )
        now = timezone.now()
        period_start = now if request.start_now else now + DEFERRED_START

        try:
            # Partial unique index catches a concurrent purchase that passed the check
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    user_id=identity.user_id,
                    audience=identity.audience,
                    plan=plan,
                    status=(
                        Subscription.Status.TRIALING
                        if trial_days > 0
                        else Subscription.Status.ACTIVE
                    ),
                    current_period_start=period_start,
                    current_period_end=period_start + period_length(billing_cycle),
                    proration_behavior=request.proration_behavior,
                    gateway=gateway,
                    coupon=quote.coupon if quote else None,
                    metadata={"billing_cycle": billing_cycle, "trial_days": trial_days},
                )
        except IntegrityError:
            raise ActiveSubscriptionExists() from None

        if quote is not None:
            redeem(quote, identity.user_id, subscription)

        invoice = create_invoice_for_subscription(
            subscription,
            plan,
            discount=quote.discount if quote else ZERO,
            billing_cycle=billing_cycle,
        )

    logger.info(
        "subscription_created",
        subscription_id=subscription.id,
        plan_code=plan.code,
        status=subscription.status,
        invoice_no=invoice.invoice_no,
    )
    return subscription, invoice


def list_subscriptions(identity: AuthContext) -> list[Subscription]:
    """All of the caller's subscriptions for their audience, newest first."""
    return list(
        _user_subscriptions(identity)
        .select_related("plan", "coupon")
        .order_by("-created_at", "-id")
    )


def get_subscription(identity: AuthContext, subscription_id: int) -> Subscription:
    """
    Raises:
        SubscriptionNotFound: Unknown id or owned by someone else
    """
    try:
        return (
            _user_subscriptions(identity)
            .select_related("plan", "coupon")
            .get(id=subscription_id)
        )
    except Subscription.DoesNotExist:
        raise SubscriptionNotFound() from None


def get_entitlements(identity: AuthContext) -> Entitlements:
    """Resolve the feature map granted by the caller's live subscription."""
    subscription = (
        _live_subscriptions(identity)
        .select_related("plan")
        .prefetch_related("plan__features")
        .first()
    )
    if subscription is None:
        return Entitlements(subscription=None, features={})
    return Entitlements(subscription=subscription, features=feature_map(subscription.plan))


def _locked_subscription(identity: AuthContext, subscription_id: int) -> Subscription:
    try:
        return (
            _user_subscriptions(identity)
            .select_for_update()
            .select_related("plan")
            .get(id=subscription_id)
        )
    except Subscription.DoesNotExist:
        raise SubscriptionNotFound() from None


def _require_status(subscription: Subscription, allowed: tuple[str, ...], action: str) -> None:
    if subscription.status not in allowed:
        raise InvalidSubscriptionState(
            f"Cannot {action} a subscription that is {subscription.status}"
        )


@transaction.atomic
def cancel_subscription(
    identity: AuthContext,
    subscription_id: int,
    cancel_at_period_end: bool = True,
) -> Subscription:
    """
    Cancel a trialing or active subscription.

    By default the subscription keeps its status and is only flagged to end
    with the current period; ``cancel_at_period_end=False`` cancels now.
    """
    subscription = _locked_subscription(identity, subscription_id)
    _require_status(subscription, Subscription.LIVE_STATUSES, "cancel")

    if cancel_at_period_end:
        subscription.cancel_at_period_end = True
    else:
        subscription.status = Subscription.Status.CANCELED
        subscription.canceled_at = timezone.now()
    subscription.save(
        update_fields=["status", "cancel_at_period_end", "canceled_at", "updated_at"]
    )

    logger.info(
        "subscription_canceled",
        subscription_id=subscription.id,
        at_period_end=cancel_at_period_end,
    )
    return subscription


@transaction.atomic
def pause_subscription(
    identity: AuthContext,
    subscription_id: int,
    resume_at: datetime | None = None,
) -> Subscription:
    """Pause an active subscription, optionally until ``resume_at``."""
    now = timezone.now()
    if resume_at is not None and resume_at <= now:
        raise ValidationFailed("resume_at must be in the future")

    subscription = _locked_subscription(identity, subscription_id)
    _require_status(subscription, (Subscription.Status.ACTIVE,), "pause")

    subscription.status = Subscription.Status.PAUSED
    subscription.paused_at = now
    subscription.resume_at = resume_at
    subscription.save(update_fields=["status", "paused_at", "resume_at", "updated_at"])

    logger.info("subscription_paused", subscription_id=subscription.id)
    return subscription


@transaction.atomic
def resume_subscription(identity: AuthContext, subscription_id: int) -> Subscription:
    """Resume a paused subscription."""
    subscription = _locked_subscription(identity, subscription_id)
    _require_status(subscription, (Subscription.Status.PAUSED,), "resume")

    subscription.status = Subscription.Status.ACTIVE
    subscription.paused_at = None
    subscription.resume_at = None
    try:
        # Another subscription may have gone live while this one was paused
        with transaction.atomic():
            subscription.save(
                update_fields=["status", "paused_at", "resume_at", "updated_at"]
            )
    except IntegrityError:
        raise ActiveSubscriptionExists() from None

    logger.info("subscription_resumed", subscription_id=subscription.id)
    return subscription


@transaction.atomic
def consume_usage(identity: AuthContext, metric: str, quantity: int = 1) -> SubscriptionUsage:
    """
    Add ``quantity`` to the caller's usage of ``metric`` this billing period.

    Raises:
        NoActiveSubscription: Caller has no live subscription
    """
    if quantity < 1:
        raise ValidationFailed("quantity must be a positive integer")

    subscription = _live_subscriptions(identity).select_for_update().first()
    if subscription is None:
        raise NoActiveSubscription()

    usage, created = SubscriptionUsage.objects.get_or_create(
        subscription=subscription,
        metric=metric,
        period_start=subscription.current_period_start,
        defaults={"period_end": subscription.current_period_end, "used": quantity},
    )
    if not created:
        SubscriptionUsage.objects.filter(pk=usage.pk).update(used=F("used") + quantity)
        usage.refresh_from_db(fields=["used"])

    logger.info("usage_consumed", subscription_id=subscription.id, metric=metric, used=usage.used)
    return usage


# --- Gateway-driven transitions ---


def activate_after_payment(subscription_id: int) -> bool:
    """
    Activate a trialing or past-due subscription once its invoice is paid.

    Returns:
        True if the subscription changed status
    """
    with transaction.atomic():
        subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
        if subscription.status not in (
            Subscription.Status.TRIALING,
            Subscription.Status.PAST_DUE,
        ):
            return False

        subscription.status = Subscription.Status.ACTIVE
        try:
            with transaction.atomic():
                subscription.save(update_fields=["status", "updated_at"])
        except IntegrityError:
            # A different subscription of this user is already live; keep this one as is
            logger.warning("subscription_activation_conflict", subscription_id=subscription_id)
            return False

    logger.info("subscription_activated", subscription_id=subscription_id)
    return True


def _gateway_subscription(gateway_subscription_id: str) -> Subscription:
    try:
        return Subscription.objects.select_for_update().get(
            gateway_subscription_id=gateway_subscription_id
        )
    except Subscription.DoesNotExist:
        raise SubscriptionNotFound(
            f"No subscription for gateway id {gateway_subscription_id}"
        ) from None
    except Subscription.MultipleObjectsReturned:
        raise SubscriptionNotFound(
            f"Gateway id {gateway_subscription_id} matches several subscriptions"
        ) from None


@transaction.atomic
def mark_past_due(gateway_subscription_id: str) -> bool:
    """
    Flag a subscription whose recurring charge failed.

    Returns:
        True if the subscription changed status
    """
    subscription = _gateway_subscription(gateway_subscription_id)
    if subscription.is_terminal or subscription.status == Subscription.Status.PAST_DUE:
        return False

    subscription.status = Subscription.Status.PAST_DUE
    subscription.save(update_fields=["status", "updated_at"])
    logger.warning("subscription_past_due", subscription_id=subscription.id)
    return True


@transaction.atomic
def cancel_from_gateway(gateway_subscription_id: str) -> bool:
    """
    Cancel a subscription because the gateway cancelled it.

    Returns:
        True if the subscription changed status
    """
    subscription = _gateway_subscription(gateway_subscription_id)
    if subscription.status == Subscription.Status.CANCELED:
        return False

    subscription.status = Subscription.Status.CANCELED
    subscription.canceled_at = timezone.now()
    subscription.save(update_fields=["status", "canceled_at", "updated_at"])
    logger.info("subscription_canceled_by_gateway", subscription_id=subscription.id)
    return True
