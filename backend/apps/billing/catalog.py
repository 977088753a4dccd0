"""
Plan catalog - read-only access to published plans and their features.
"""

from django.db.models import QuerySet

from apps.billing.exceptions import InvalidAudience, PlanNotFound
from apps.billing.models import Plan, PlanAudience
from apps.core.auth import Audience


def _published() -> QuerySet[Plan]:
    return Plan.objects.filter(is_published=True).prefetch_related("features")


def find_published_plan(code: str) -> Plan:
    """
    Get a published plan by code (case-insensitive).

    Raises:
        PlanNotFound: If no published plan has this code
    """
    try:
        return _published().get(code=code.strip().upper())
    except Plan.DoesNotExist:
        raise PlanNotFound() from None


def list_published_plans(audience: Audience | None = None) -> list[Plan]:
    """
    List published plans, optionally only those purchasable by ``audience``.

    Plans for both audiences are always included in a filtered listing.
    """
    queryset = _published()
    if audience is not None:
        queryset = queryset.filter(audience__in=[audience.value, PlanAudience.BOTH])
    return list(queryset.order_by("sort_order", "price"))


def ensure_plan_available(plan: Plan, audience: Audience) -> None:
    """
    Raises:
        InvalidAudience: If users acting as ``audience`` may not buy the plan
    """
    if not plan.is_available_to(audience):
        raise InvalidAudience(f"Plan {plan.code} is not available for {audience.value} accounts")


def feature_map(plan: Plan) -> dict:
    """Resolve a plan's features to {feature_key: feature_value}."""
    return {feature.feature_key: feature.feature_value for feature in plan.features.all()}
