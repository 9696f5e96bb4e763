"""
mealplan/models/plan.py

Plan catalog entry. Static display data; the external price id is
resolved separately so it never reaches API responses.
"""

from typing import List
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from mealplan.models.profile import Tier


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    interval: Tier
    name: str
    amount: float
    currency: str
    description: str
    features: List[str]
    is_popular: bool = False
