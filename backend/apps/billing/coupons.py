"""
Coupon engine - validates coupon codes, prices discounts, records redemptions.

Redemption limits are counted from CouponRedemption rows. The coupon row is
locked while counting so that the check and the redemption insert of
concurrent purchases run one after another.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from django.db import transaction
from django.utils import timezone

from apps.billing.exceptions import (
    CouponLimitExceeded,
    InvalidCoupon,
    UserCouponLimitExceeded,
)
from apps.billing.models import Coupon, CouponRedemption, Plan, Subscription
from apps.core.logging import get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class CouponQuote:
    """A validated coupon and the discount it grants on one plan."""

    coupon: Coupon
    discount: Decimal


def compute_discount(coupon: Coupon, price: Decimal) -> Decimal:
    """
    Discount amount for ``price``, rounded half-up to cents.

    Not clamped: a fixed coupon larger than the price is clamped when the
    invoice total is computed.
    """
    if coupon.kind == Coupon.Kind.PERCENT:
        discount = price * coupon.value / Decimal(100)
    else:
        discount = coupon.value
    return discount.quantize(CENT, rounding=ROUND_HALF_UP)


def price_coupon(code: str, plan: Plan, user_id: str) -> CouponQuote:
    """
    Validate a coupon code for ``user_id`` and price it against ``plan``.

    Must run inside ``transaction.atomic()``; the coupon row stays locked
    until the caller's transaction ends, so call ``redeem`` in the same one.

    Raises:
        InvalidCoupon: Unknown, inactive or outside its validity window
        CouponLimitExceeded: Total redemptions reached max_redemptions
        UserCouponLimitExceeded: This user reached per_user_limit
    """
    normalized = code.strip().upper()
    coupon = Coupon.objects.select_for_update().filter(code=normalized).first()
    if coupon is None or not coupon.is_redeemable_at(timezone.now()):
        raise InvalidCoupon()

    redemptions = CouponRedemption.objects.filter(coupon=coupon)
    if coupon.max_redemptions is not None and redemptions.count() >= coupon.max_redemptions:
        raise CouponLimitExceeded()

    if redemptions.filter(user_id=user_id).count() >= coupon.per_user_limit:
        raise UserCouponLimitExceeded()

    return CouponQuote(coupon=coupon, discount=compute_discount(coupon, plan.price))


def redeem(quote: CouponQuote, user_id: str, subscription: Subscription) -> CouponRedemption:
    """Record exactly one redemption of a priced coupon."""
    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("Coupon redemption must run inside the pricing transaction")

    redemption = CouponRedemption.objects.create(
        coupon=quote.coupon,
        user_id=user_id,
        subscription=subscription,
    )
    logger.info(
        "coupon_redeemed",
        coupon_code=quote.coupon.code,
        subscription_id=subscription.id,
        discount=str(quote.discount),
    )
    return redemption
