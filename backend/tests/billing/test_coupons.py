"""
Tests for the coupon engine.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import transaction
from django.utils import timezone

from apps.billing.coupons import CouponQuote, compute_discount, price_coupon, redeem
from apps.billing.exceptions import (
    CouponLimitExceeded,
    InvalidCoupon,
    UserCouponLimitExceeded,
)
from apps.billing.models import Coupon, CouponRedemption

from .factories import CouponFactory, CouponRedemptionFactory, PlanFactory, SubscriptionFactory


class TestComputeDiscount:
    """Tests for compute_discount."""

    @pytest.mark.parametrize(
        ("kind", "value", "price", "expected"),
        [
            (Coupon.Kind.PERCENT, "50", "1999.00", "999.50"),
            (Coupon.Kind.PERCENT, "10", "999.99", "100.00"),
            (Coupon.Kind.PERCENT, "100", "1999.00", "1999.00"),
            (Coupon.Kind.FIXED, "300", "1999.00", "300.00"),
            (Coupon.Kind.FIXED, "5000", "1999.00", "5000.00"),
        ],
    )
    def test_discount(self, kind, value, price, expected) -> None:
        coupon = Coupon(kind=kind, value=Decimal(value))

        assert compute_discount(coupon, Decimal(price)) == Decimal(expected)


@pytest.mark.django_db
class TestPriceCoupon:
    """Tests for price_coupon."""

    def test_prices_valid_coupon_case_insensitively(self) -> None:
        plan = PlanFactory.create(price=Decimal("1999.00"))
        coupon = CouponFactory.create(code="HALF")

        quote = price_coupon(" half ", plan, "usr_1")

        assert quote.coupon == coupon
        assert quote.discount == Decimal("999.50")

    def test_unknown_code(self) -> None:
        plan = PlanFactory.create()

        with pytest.raises(InvalidCoupon):
            price_coupon("NOPE", plan, "usr_1")

    def test_inactive_coupon(self) -> None:
        plan = PlanFactory.create()
        CouponFactory.create(code="OFF", is_active=False)

        with pytest.raises(InvalidCoupon):
            price_coupon("OFF", plan, "usr_1")

    def test_expired_coupon(self) -> None:
        plan = PlanFactory.create()
        now = timezone.now()
        CouponFactory.create(
            code="OLD", starts_at=now - timedelta(days=30), ends_at=now - timedelta(days=1)
        )

        with pytest.raises(InvalidCoupon):
            price_coupon("OLD", plan, "usr_1")

    def test_not_yet_started_coupon(self) -> None:
        plan = PlanFactory.create()
        now = timezone.now()
        CouponFactory.create(
            code="SOON", starts_at=now + timedelta(days=1), ends_at=now + timedelta(days=30)
        )

        with pytest.raises(InvalidCoupon):
            price_coupon("SOON", plan, "usr_1")

    def test_global_limit_reached(self) -> None:
        plan = PlanFactory.create()
        coupon = CouponFactory.create(code="LIMITED", max_redemptions=2, per_user_limit=5)
        CouponRedemptionFactory.create_batch(2, coupon=coupon)

        with pytest.raises(CouponLimitExceeded):
            price_coupon("LIMITED", plan, "usr_1")

    def test_global_limit_checked_before_user_limit(self) -> None:
        plan = PlanFactory.create()
        coupon = CouponFactory.create(code="LIMITED", max_redemptions=1, per_user_limit=1)
        CouponRedemptionFactory.create(coupon=coupon, user_id="usr_1")

        with pytest.raises(CouponLimitExceeded):
            price_coupon("LIMITED", plan, "usr_1")

    def test_user_limit_reached(self) -> None:
        plan = PlanFactory.create()
        coupon = CouponFactory.create(code="TWICE", per_user_limit=2)
        CouponRedemptionFactory.create_batch(2, coupon=coupon, user_id="usr_1")

        with pytest.raises(UserCouponLimitExceeded):
            price_coupon("TWICE", plan, "usr_1")

        assert price_coupon("TWICE", plan, "usr_2").coupon == coupon


@pytest.mark.django_db
class TestRedeem:
    """Tests for redeem."""

    def test_records_one_redemption(self) -> None:
        subscription = SubscriptionFactory.create()
        coupon = CouponFactory.create()

        with transaction.atomic():
            redeem(CouponQuote(coupon=coupon, discount=Decimal("10.00")), "usr_1", subscription)

        redemption = CouponRedemption.objects.get()
        assert redemption.coupon == coupon
        assert redemption.subscription == subscription
        assert redemption.user_id == "usr_1"
