"""Meal plan generation route (subscribers only)."""
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from mealplan.api.deps import get_generator, get_store, require_identity
from mealplan.core.auth import Identity
from mealplan.core.errors import SubscriptionRequiredError
from mealplan.features.mealplans.service import MealPlanGenerator, MealPlanRequest
from mealplan.features.profiles.store import ProfileStore


router = APIRouter(prefix="/api", tags=["mealplan"])


class MealPlanResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    meal_plan: Dict[str, Dict[str, str]]


@router.post("/generate-mealplan", response_model=MealPlanResponse)
def generate_mealplan(
    body: MealPlanRequest,
    identity: Identity = Depends(require_identity),
    store: ProfileStore = Depends(get_store),
    generator: MealPlanGenerator = Depends(get_generator),
):
    profile = store.find(identity.user_id)
    if profile is None or not profile.subscription_active:
        raise SubscriptionRequiredError("An active subscription is required to generate meal plans")
    return {"meal_plan": generator.generate(body, user_id=identity.user_id)}
