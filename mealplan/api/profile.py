"""
Profile and subscription management routes.

- POST /api/create-profile: Create the caller's profile (idempotent)
- GET  /api/check-subscription: Is a user's subscription active
- GET  /api/profile/subscription-status: Caller's current tier
- POST /api/profile/change-plan: Move the caller to another interval
- POST /api/profile/unsubscribe: Cancel the caller's subscription
- POST /api/profile/resync: Repair the caller's profile from the billing provider
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from mealplan.api.deps import get_identity, get_reconciler, get_store, require_identity
from mealplan.core.auth import Identity
from mealplan.core.errors import NotFoundError, ValidationError
from mealplan.core.logging import log_event
from mealplan.features.billing.reconciliation import ReconciliationEngine
from mealplan.features.profiles.store import ProfileStore
from mealplan.models.profile import Profile, Tier


router = APIRouter(prefix="/api", tags=["profile"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateProfileResponse(CamelModel):
    message: str
    profile: Profile


class CheckSubscriptionResponse(CamelModel):
    subscription_active: bool


class TierView(CamelModel):
    subscription_tier: Optional[Tier] = None


class SubscriptionStatusResponse(CamelModel):
    subscription: TierView


class ChangePlanRequest(CamelModel):
    new_plan: Optional[str] = None


class ProfileResponse(CamelModel):
    subscription: Profile


class ActiveView(CamelModel):
    subscription_active: bool


class UnsubscribeResponse(CamelModel):
    subscription: ActiveView


@router.post("/create-profile", response_model=CreateProfileResponse, status_code=201)
def create_profile(
    response: Response,
    identity: Optional[Identity] = Depends(get_identity),
    store: ProfileStore = Depends(get_store),
):
    """
    Create a profile for the signed-in user.

    Errors:
        404: No identity could be resolved
        400: Identity has no email address
    """
    if identity is None:
        raise NotFoundError("User not found in identity provider", code="identity_not_found")
    if not identity.email:
        raise ValidationError("Email not found in identity provider user data", code="email_missing")

    profile, created = store.get_or_create(identity.user_id, identity.email)
    if not created:
        response.status_code = 200
        return {"message": "Profile already exists", "profile": profile}

    log_event("info", "profile.created", user_id=profile.user_id)
    return {"message": "Profile created successfully", "profile": profile}


@router.get("/check-subscription", response_model=CheckSubscriptionResponse)
def check_subscription(
    user_id: Optional[str] = Query(None, alias="userId"),
    store: ProfileStore = Depends(get_store),
):
    if not user_id:
        raise ValidationError("userId is required")
    profile = store.find(user_id)
    return {"subscription_active": bool(profile and profile.subscription_active)}


@router.get("/profile/subscription-status", response_model=SubscriptionStatusResponse)
def subscription_status(
    identity: Identity = Depends(require_identity),
    store: ProfileStore = Depends(get_store),
):
    profile = store.find(identity.user_id)
    if profile is None:
        raise NotFoundError("No profile found", code="profile_not_found")
    return {"subscription": {"subscription_tier": profile.subscription_tier}}


@router.post("/profile/change-plan", response_model=ProfileResponse)
def change_plan(
    body: ChangePlanRequest,
    identity: Identity = Depends(require_identity),
    reconciler: ReconciliationEngine = Depends(get_reconciler),
):
    profile = reconciler.change_plan(identity.user_id, body.new_plan)
    return {"subscription": profile}


@router.post("/profile/unsubscribe", response_model=UnsubscribeResponse)
def unsubscribe(
    identity: Identity = Depends(require_identity),
    reconciler: ReconciliationEngine = Depends(get_reconciler),
):
    profile = reconciler.unsubscribe(identity.user_id)
    return {"subscription": {"subscription_active": profile.subscription_active}}


@router.post("/profile/resync", response_model=ProfileResponse)
def resync(
    identity: Identity = Depends(require_identity),
    reconciler: ReconciliationEngine = Depends(get_reconciler),
):
    return {"subscription": reconciler.resync_profile(identity.user_id)}
