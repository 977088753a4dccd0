"""
Tests for subscription lifecycle services.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from apps.billing.exceptions import (
    ActiveSubscriptionExists,
    CouponLimitExceeded,
    InvalidAudience,
    InvalidCoupon,
    InvalidSubscriptionState,
    NoActiveSubscription,
    PlanNotFound,
    SubscriptionNotFound,
    UnsupportedGateway,
    UserCouponLimitExceeded,
)
from apps.billing.models import (
    BillingCycle,
    CouponRedemption,
    Invoice,
    PlanAudience,
    Subscription,
    SubscriptionUsage,
)
from apps.billing.services import (
    SubscribeOptions,
    activate_after_payment,
    cancel_from_gateway,
    cancel_subscription,
    consume_usage,
    get_entitlements,
    get_subscription,
    list_subscriptions,
    mark_past_due,
    pause_subscription,
    period_length,
    resume_subscription,
    subscribe,
)
from apps.core.auth import Audience
from apps.core.exceptions import ValidationFailed

from .factories import (
    CouponFactory,
    CouponRedemptionFactory,
    PlanFactory,
    PlanFeatureFactory,
    SubscriptionFactory,
)


@pytest.mark.django_db
class TestSubscribe:
    """Tests for subscribe."""

    def test_creates_active_subscription_and_pending_invoice(self, owner_identity) -> None:
        plan = PlanFactory.create(code="OWNER_PRO", price=Decimal("1999.00"))

        subscription, invoice = subscribe(owner_identity, SubscribeOptions(plan_code="owner_pro"))

        assert subscription.status == Subscription.Status.ACTIVE
        assert subscription.plan == plan
        assert subscription.user_id == owner_identity.user_id
        assert subscription.audience == Audience.OWNER
        assert invoice.subscription == subscription
        assert invoice.status == Invoice.Status.PENDING
        assert invoice.total == Decimal("1999.00")
        assert Subscription.objects.count() == 1
        assert Invoice.objects.count() == 1

    def test_trial_plan_starts_trialing(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_TRIAL", price=Decimal("1999.00"), trial_days=14)

        subscription, invoice = subscribe(owner_identity, SubscribeOptions(plan_code="OWNER_TRIAL"))

        assert subscription.status == Subscription.Status.TRIALING
        assert subscription.metadata["trial_days"] == 14
        assert invoice.total == Decimal("1999.00")
        due_in = invoice.due_at - invoice.issued_at
        assert due_in == timedelta(days=7)

    def test_trial_override_zero_starts_active(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_TRIAL", trial_days=14)

        subscription, _ = subscribe(
            owner_identity,
            SubscribeOptions(plan_code="OWNER_TRIAL", trial_override_days=0),
        )

        assert subscription.status == Subscription.Status.ACTIVE

    def test_billing_cycle_sets_period_length(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO")

        subscription, _ = subscribe(
            owner_identity,
            SubscribeOptions(plan_code="OWNER_PRO", billing_cycle=BillingCycle.YEARLY),
        )

        period = subscription.current_period_end - subscription.current_period_start
        assert period == timedelta(days=365)
        assert subscription.metadata["billing_cycle"] == BillingCycle.YEARLY

    def test_deferred_start(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO")
        before = timezone.now()

        subscription, _ = subscribe(
            owner_identity,
            SubscribeOptions(plan_code="OWNER_PRO", start_now=False),
        )

        assert subscription.current_period_start >= before + timedelta(hours=24)

    def test_percent_coupon_discounts_invoice(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO", price=Decimal("1999.00"))
        coupon = CouponFactory.create(code="HALF", value=Decimal("50"))

        subscription, invoice = subscribe(
            owner_identity,
            SubscribeOptions(plan_code="OWNER_PRO", coupon_code="half"),
        )

        assert invoice.discount == Decimal("999.50")
        assert invoice.total == Decimal("999.50")
        assert subscription.coupon == coupon
        assert CouponRedemption.objects.filter(coupon=coupon, subscription=subscription).count() == 1

    def test_unknown_plan_raises(self, owner_identity) -> None:
        with pytest.raises(PlanNotFound):
            subscribe(owner_identity, SubscribeOptions(plan_code="NOPE"))

    def test_unpublished_plan_raises(self, owner_identity) -> None:
        PlanFactory.create(code="DRAFT", is_published=False)

        with pytest.raises(PlanNotFound):
            subscribe(owner_identity, SubscribeOptions(plan_code="DRAFT"))

    def test_wrong_audience_raises(self, tenant_identity) -> None:
        PlanFactory.create(code="OWNER_PRO", audience=PlanAudience.OWNER)

        with pytest.raises(InvalidAudience):
            subscribe(tenant_identity, SubscribeOptions(plan_code="OWNER_PRO"))

        assert Subscription.objects.count() == 0

    def test_plan_for_both_audiences(self, tenant_identity) -> None:
        PlanFactory.create(code="ANY", audience=PlanAudience.BOTH)

        subscription, _ = subscribe(tenant_identity, SubscribeOptions(plan_code="ANY"))

        assert subscription.audience == Audience.TENANT

    def test_second_live_subscription_rejected(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO")
        subscribe(owner_identity, SubscribeOptions(plan_code="OWNER_PRO"))

        with pytest.raises(ActiveSubscriptionExists):
            subscribe(owner_identity, SubscribeOptions(plan_code="OWNER_PRO"))

        assert Subscription.objects.count() == 1
        assert Invoice.objects.count() == 1

    def test_invalid_coupon_rolls_back(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO")

        with pytest.raises(InvalidCoupon):
            subscribe(owner_identity, SubscribeOptions(plan_code="OWNER_PRO", coupon_code="BOGUS"))

        assert Subscription.objects.count() == 0
        assert Invoice.objects.count() == 0

    def test_coupon_global_limit(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO")
        coupon = CouponFactory.create(code="ONCE", max_redemptions=1)
        CouponRedemptionFactory.create(coupon=coupon, user_id="usr_someone_else")

        with pytest.raises(CouponLimitExceeded):
            subscribe(owner_identity, SubscribeOptions(plan_code="OWNER_PRO", coupon_code="ONCE"))

    def test_coupon_per_user_limit(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO")
        coupon = CouponFactory.create(code="WELCOME", per_user_limit=1)
        CouponRedemptionFactory.create(coupon=coupon, user_id=owner_identity.user_id)

        with pytest.raises(UserCouponLimitExceeded):
            subscribe(
                owner_identity, SubscribeOptions(plan_code="OWNER_PRO", coupon_code="WELCOME")
            )

    def test_unknown_gateway_raises(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO")

        with pytest.raises(UnsupportedGateway):
            subscribe(
                owner_identity,
                SubscribeOptions(plan_code="OWNER_PRO", payment_gateway="paypal"),
            )

    def test_unknown_billing_cycle_raises(self, owner_identity) -> None:
        PlanFactory.create(code="OWNER_PRO")

        with pytest.raises(ValidationFailed):
            subscribe(
                owner_identity,
                SubscribeOptions(plan_code="OWNER_PRO", billing_cycle="weekly"),
            )


class TestPeriodLength:
    """Tests for period_length."""

    def test_known_cycles(self) -> None:
        assert period_length(BillingCycle.MONTHLY) == timedelta(days=30)
        assert period_length(BillingCycle.QUARTERLY) == timedelta(days=90)

    def test_one_time_falls_back(self) -> None:
        assert period_length(BillingCycle.ONE_TIME) == timedelta(days=30)


@pytest.mark.django_db
class TestSubscriptionReads:
    """Tests for subscription listing and lookup."""

    def test_list_only_own_audience(self, owner_identity) -> None:
        mine = SubscriptionFactory.create(user_id=owner_identity.user_id)
        SubscriptionFactory.create(user_id=owner_identity.user_id, audience=Audience.TENANT)
        SubscriptionFactory.create(user_id="usr_other")

        assert list_subscriptions(owner_identity) == [mine]

    def test_get_other_users_subscription_raises(self, owner_identity) -> None:
        other = SubscriptionFactory.create(user_id="usr_other")

        with pytest.raises(SubscriptionNotFound):
            get_subscription(owner_identity, other.id)


@pytest.mark.django_db
class TestLifecycle:
    """Tests for cancel, pause and resume."""

    def test_cancel_defaults_to_period_end(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(user_id=owner_identity.user_id)

        result = cancel_subscription(owner_identity, subscription.id)

        assert result.status == Subscription.Status.ACTIVE
        assert result.cancel_at_period_end is True
        assert result.canceled_at is None

    def test_cancel_immediately(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(user_id=owner_identity.user_id)

        result = cancel_subscription(owner_identity, subscription.id, cancel_at_period_end=False)

        subscription.refresh_from_db()
        assert result.status == Subscription.Status.CANCELED
        assert subscription.status == Subscription.Status.CANCELED
        assert subscription.canceled_at is not None

    def test_cancel_paused_raises(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(
            user_id=owner_identity.user_id, status=Subscription.Status.PAUSED
        )

        with pytest.raises(InvalidSubscriptionState):
            cancel_subscription(owner_identity, subscription.id)

    def test_pause_active(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(user_id=owner_identity.user_id)
        resume_at = timezone.now() + timedelta(days=10)

        result = pause_subscription(owner_identity, subscription.id, resume_at=resume_at)

        assert result.status == Subscription.Status.PAUSED
        assert result.paused_at is not None
        assert result.resume_at == resume_at

    def test_pause_twice_raises(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(user_id=owner_identity.user_id)
        pause_subscription(owner_identity, subscription.id)

        with pytest.raises(InvalidSubscriptionState):
            pause_subscription(owner_identity, subscription.id)

    def test_pause_trialing_raises(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(
            user_id=owner_identity.user_id, status=Subscription.Status.TRIALING
        )

        with pytest.raises(InvalidSubscriptionState):
            pause_subscription(owner_identity, subscription.id)

    def test_pause_with_past_resume_at_raises(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(user_id=owner_identity.user_id)

        with pytest.raises(ValidationFailed):
            pause_subscription(
                owner_identity, subscription.id, resume_at=timezone.now() - timedelta(days=1)
            )

    def test_resume_paused(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(user_id=owner_identity.user_id)
        pause_subscription(owner_identity, subscription.id)

        result = resume_subscription(owner_identity, subscription.id)

        assert result.status == Subscription.Status.ACTIVE
        assert result.paused_at is None
        assert result.resume_at is None

    def test_resume_active_raises(self, owner_identity) -> None:
        subscription = SubscriptionFactory.create(user_id=owner_identity.user_id)

        with pytest.raises(InvalidSubscriptionState):
            resume_subscription(owner_identity, subscription.id)

    def test_resume_blocked_by_other_live_subscription(self, owner_identity) -> None:
        paused = SubscriptionFactory.create(
            user_id=owner_identity.user_id, status=Subscription.Status.PAUSED
        )
        SubscriptionFactory.create(user_id=owner_identity.user_id)

        with pytest.raises(ActiveSubscriptionExists):
            resume_subscription(owner_identity, paused.id)

        paused.refresh_from_db()
        assert paused.status == Subscription.Status.PAUSED

    def test_other_users_subscription_not_found(self, owner_identity) -> None:
        other = SubscriptionFactory.create(user_id="usr_other")

        with pytest.raises(SubscriptionNotFound):
            pause_subscription(owner_identity, other.id)


@pytest.mark.django_db
class TestEntitlements:
    """Tests for get_entitlements."""

    def test_no_subscription(self, owner_identity) -> None:
        entitlements = get_entitlements(owner_identity)

        assert entitlements.has_active_subscription is False
        assert entitlements.features == {}

    def test_features_of_live_plan(self, owner_identity) -> None:
        plan = PlanFactory.create()
        PlanFeatureFactory.create(plan=plan, feature_key="max_listings", feature_value=25)
        PlanFeatureFactory.create(plan=plan, feature_key="featured", feature_value=True)
        SubscriptionFactory.create(user_id=owner_identity.user_id, plan=plan)

        entitlements = get_entitlements(owner_identity)

        assert entitlements.has_active_subscription is True
        assert entitlements.features == {"max_listings": 25, "featured": True}

    def test_paused_subscription_grants_nothing(self, owner_identity) -> None:
        SubscriptionFactory.create(
            user_id=owner_identity.user_id, status=Subscription.Status.PAUSED
        )

        assert get_entitlements(owner_identity).has_active_subscription is False


@pytest.mark.django_db
class TestConsumeUsage:
    """Tests for consume_usage."""

    def test_accumulates_within_period(self, owner_identity) -> None:
        SubscriptionFactory.create(user_id=owner_identity.user_id)

        consume_usage(owner_identity, "listing_boosts", 2)
        usage = consume_usage(owner_identity, "listing_boosts", 3)

        assert usage.used == 5
        assert SubscriptionUsage.objects.count() == 1

    def test_metrics_are_separate(self, owner_identity) -> None:
        SubscriptionFactory.create(user_id=owner_identity.user_id)

        consume_usage(owner_identity, "listing_boosts")
        consume_usage(owner_identity, "contact_unlocks")

        assert SubscriptionUsage.objects.count() == 2

    def test_requires_live_subscription(self, owner_identity) -> None:
        with pytest.raises(NoActiveSubscription):
            consume_usage(owner_identity, "listing_boosts")

    def test_rejects_non_positive_quantity(self, owner_identity) -> None:
        SubscriptionFactory.create(user_id=owner_identity.user_id)

        with pytest.raises(ValidationFailed):
            consume_usage(owner_identity, "listing_boosts", 0)


@pytest.mark.django_db
class TestGatewayTransitions:
    """Tests for webhook-driven subscription transitions."""

    def test_activate_trialing(self) -> None:
        subscription = SubscriptionFactory.create(status=Subscription.Status.TRIALING)

        assert activate_after_payment(subscription.id) is True

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.ACTIVE

    def test_activate_past_due(self) -> None:
        subscription = SubscriptionFactory.create(status=Subscription.Status.PAST_DUE)

        assert activate_after_payment(subscription.id) is True

    @pytest.mark.parametrize(
        "status",
        [Subscription.Status.ACTIVE, Subscription.Status.PAUSED, Subscription.Status.CANCELED],
    )
    def test_activate_ignores_other_states(self, status) -> None:
        subscription = SubscriptionFactory.create(status=status)

        assert activate_after_payment(subscription.id) is False

        subscription.refresh_from_db()
        assert subscription.status == status

    def test_activate_conflict_keeps_status(self) -> None:
        live = SubscriptionFactory.create(user_id="usr_1")
        past_due = SubscriptionFactory.create(user_id="usr_1", status=Subscription.Status.PAST_DUE)

        assert activate_after_payment(past_due.id) is False

        past_due.refresh_from_db()
        live.refresh_from_db()
        assert past_due.status == Subscription.Status.PAST_DUE
        assert live.status == Subscription.Status.ACTIVE

    def test_mark_past_due(self) -> None:
        subscription = SubscriptionFactory.create(gateway_subscription_id="sub_123")

        assert mark_past_due("sub_123") is True
        assert mark_past_due("sub_123") is False

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.PAST_DUE

    def test_mark_past_due_skips_canceled(self) -> None:
        SubscriptionFactory.create(
            gateway_subscription_id="sub_123", status=Subscription.Status.CANCELED
        )

        assert mark_past_due("sub_123") is False

    def test_cancel_from_gateway(self) -> None:
        subscription = SubscriptionFactory.create(gateway_subscription_id="sub_123")

        assert cancel_from_gateway("sub_123") is True
        assert cancel_from_gateway("sub_123") is False

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.CANCELED
        assert subscription.canceled_at is not None

    def test_unknown_gateway_subscription_raises(self) -> None:
        with pytest.raises(SubscriptionNotFound):
            cancel_from_gateway("sub_missing")

