"""
mealplan/models/profile.py

Profile: the cached billing state of one user.

The billing provider is the source of truth; a Profile mirrors it.
"""

import enum
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

Tier = Literal["week", "month", "year"]
TIERS = ("week", "month", "year")


class BillingState(str, enum.Enum):
    UNSUBSCRIBED = "unsubscribed"
    ACTIVE = "active"
    PAST_DUE = "past_due"


class Profile(BaseModel):
    """
    Billing state composite (subscription_active, subscription_tier, stripe_subscription_id):

    - Unsubscribed: (False, None, None)
    - Active(tier): (True, tier, sub_id)
    - PastDue:      (False, tier, sub_id)
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    user_id: str
    email: str
    subscription_tier: Optional[Tier] = None
    stripe_subscription_id: Optional[str] = None
    subscription_active: bool = False

    @property
    def state(self) -> BillingState:
        if self.subscription_active:
            return BillingState.ACTIVE
        if self.stripe_subscription_id:
            return BillingState.PAST_DUE
        return BillingState.UNSUBSCRIBED

