"""
Plan catalog.

Fixed list of subscription plans (display order = list order) and the
interval -> external price id lookup.
"""

from typing import Dict, List, Optional, Tuple

from mealplan.models.plan import Plan
from mealplan.models.profile import TIERS


DEFAULT_PLANS: Tuple[Plan, ...] = (
    Plan(
        interval="week",
        name="Weekly Plan",
        amount=99.99,
        currency="INR",
        description="Great if you want to try the service before committing longer.",
        features=["Unlimited AI meal plans", "AI nutrition insights", "Cancel anytime"],
    ),
    Plan(
        interval="month",
        name="Monthly Plan",
        amount=399.99,
        currency="INR",
        description="Perfect for ongoing, month to month meal planning and features.",
        features=["Unlimited AI meal plans", "Priority AI support", "Cancel anytime"],
        is_popular=True,
    ),
    Plan(
        interval="year",
        name="Yearly Plan",
        amount=2399.99,
        currency="INR",
        description="Great for consistent and long term usage, planning and features.",
        features=["Unlimited AI meal plans", "All premium features", "Cancel anytime"],
    ),
)


class PlanCatalog:
    """Read-only plan catalog."""

    def __init__(self, price_ids: Dict[str, Optional[str]], plans: Tuple[Plan, ...] = DEFAULT_PLANS):
        self._plans = plans
        self._price_ids = {k: v for k, v in price_ids.items() if k in TIERS and v}

    def list_plans(self) -> List[Plan]:
        return list(self._plans)

    def is_valid_interval(self, interval: Optional[str]) -> bool:
        return interval in TIERS

    def price_id_for(self, interval: Optional[str]) -> Optional[str]:
        """External price id, or None for an unknown or unconfigured interval."""
        if not self.is_valid_interval(interval):
            return None
        return self._price_ids.get(interval)

    def interval_for_price(self, price_id: Optional[str]) -> Optional[str]:
        for interval, pid in self._price_ids.items():
            if pid == price_id:
                return interval
        return None
