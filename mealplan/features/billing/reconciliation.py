"""
Subscription reconciliation engine.

Applies billing provider events and user-initiated subscription actions to
the Profile Store. Profile billing states:

    Unsubscribed  (active=False, tier=None, sub=None)
    Active(tier)  (active=True,  tier,      sub)
    PastDue       (active=False, tier,      sub)

Transitions:
    checkout.session.completed     -> Active(tier)
    invoice.payment_failed         -> PastDue
    customer.subscription.deleted  -> Unsubscribed
    change_plan(new_plan)          -> Active(new_plan)
    unsubscribe()                  -> Unsubscribed (provider cancels immediately)
    start_checkout()               -> unchanged until the completion event arrives

Provider calls are never rolled back. When a provider call succeeds and the
following store write fails, the failure is logged as a partial failure and
re-raised; the provider's own webhook for the change repairs the profile.
"""
from typing import Any, Optional

from mealplan.core.errors import (
    AppError,
    CorrelationError,
    NotFoundError,
    ValidationError,
)
from mealplan.core.logging import log_event
from mealplan.features.billing.ledger import EventLedger, RELEASED, APPLIED
from mealplan.features.billing.provider import BillingEvent, BillingGateway
from mealplan.features.plans.catalog import PlanCatalog
from mealplan.features.profiles.store import ProfileStore
from mealplan.models.profile import Profile, TIERS

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Provider subscription statuses
ACTIVE_STATUSES = ("active", "trialing")
ENDED_STATUSES = ("canceled", "incomplete_expired")

# Checkout metadata keys; clerkUserId/planType were written by the earlier web client
USER_ID_KEYS = ("userId", "clerkUserId")
PLAN_KEYS = ("planInterval", "planType")


def _first(mapping: dict, keys) -> Optional[str]:
    for key in keys:
        value = mapping.get(key)
        if value:
            return value
    return None


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def invoice_subscription_id(invoice: dict) -> Optional[str]:
    """Subscription id of an invoice, for both old and current API versions."""
    legacy = _object_id(invoice.get("subscription"))
    if legacy:
        return legacy
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def subscription_id_for(event: BillingEvent) -> Optional[str]:
    if event.type == CHECKOUT_COMPLETED:
        return _object_id(event.data.get("subscription"))
    if event.type == INVOICE_PAYMENT_FAILED:
        return invoice_subscription_id(event.data)
    if event.type == SUBSCRIPTION_DELETED:
        return event.data.get("id")
    return None


class ReconciliationEngine:
    def __init__(
        self,
        store: ProfileStore,
        catalog: PlanCatalog,
        gateway: BillingGateway,
        ledger: EventLedger,
        base_url: str,
    ):
        self.store = store
        self.catalog = catalog
        self.gateway = gateway
        self.ledger = ledger
        self.base_url = base_url.rstrip("/")

    # ---- user-initiated actions ----

    def start_checkout(self, plan_type: Optional[str], user_id: Optional[str], email: Optional[str]) -> str:
        """
        Create a provider checkout session. The profile is not touched here;
        it changes only when checkout.session.completed arrives.

        Raises:
            ValidationError: missing field, unknown plan, or unconfigured price
        """
        if not plan_type or not user_id or not email:
            raise ValidationError("planType, userId and email are required")
        if not self.catalog.is_valid_interval(plan_type):
            raise ValidationError(f"Invalid plan type: {plan_type}", code="invalid_plan")
        price_id = self.catalog.price_id_for(plan_type)
        if not price_id:
            raise ValidationError(f"No price configured for plan: {plan_type}", code="invalid_plan")

        url = self.gateway.create_checkout_session(
            price_id=price_id,
            customer_email=email,
            success_url=f"{self.base_url}/?SESSION_ID={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.base_url}/subscribe",
            metadata={"userId": user_id, "planInterval": plan_type},
        )
        log_event("info", "billing.checkout.created", user_id=user_id, extra={"plan": plan_type})
        return url

    def _subscribed_profile(self, user_id: str) -> Profile:
        profile = self.store.find(user_id)
        if profile is None:
            raise NotFoundError("No profile found", code="profile_not_found")
        if not profile.stripe_subscription_id:
            raise ValidationError("No subscription found", code="no_subscription")
        return profile

    def _write_after_provider_change(self, user_id: str, subscription_id: str, action: str, **fields) -> Profile:
        try:
            return self.store.update(user_id, **fields)
        except AppError as e:
            log_event(
                "error",
                f"billing.{action}.partial_failure",
                user_id=user_id,
                subscription_id=subscription_id,
                error_code="partial_failure",
                extra={"error": e.message},
            )
            raise

    def change_plan(self, user_id: str, new_plan: Optional[str]) -> Profile:
        """
        Move the user's subscription to another interval's price.

        The provider update prorates and sets cancel_at_period_end.
        """
        if not new_plan:
            raise ValidationError("No new plan provided")
        if new_plan not in TIERS:
            raise ValidationError(f"Invalid plan type: {new_plan}", code="invalid_plan")

        profile = self._subscribed_profile(user_id)
        subscription_id = profile.stripe_subscription_id

        new_price_id = self.catalog.price_id_for(new_plan)
        if not new_price_id:
            raise ValidationError("Invalid price ID for the new plan", code="invalid_plan")

        current = self.gateway.retrieve_subscription(subscription_id)
        if not current.item_id:
            raise ValidationError("No active subscription items found", code="no_subscription_items")

        updated = self.gateway.update_subscription(
            subscription_id,
            item_id=current.item_id,
            new_price_id=new_price_id,
            cancel_at_period_end=True,
        )
        log_event(
            "info",
            "billing.plan_change.provider_updated",
            user_id=user_id,
            subscription_id=updated.id,
            extra={"from": profile.subscription_tier, "to": new_plan},
        )

        self.ledger.record_local("plan_change", updated.id, user_id, outcome=APPLIED)
        return self._write_after_provider_change(
            user_id,
            updated.id,
            "plan_change",
            subscription_tier=new_plan,
            stripe_subscription_id=updated.id,
            subscription_active=True,
        )

    def unsubscribe(self, user_id: str) -> Profile:
        """Cancel the provider subscription immediately and clear the profile."""
        profile = self._subscribed_profile(user_id)
        subscription_id = profile.stripe_subscription_id

        try:
            self.gateway.cancel_subscription(subscription_id)
        except NotFoundError:
            # Already gone at the provider; the cached profile is stale
            log_event(
                "warning",
                "billing.unsubscribe.already_cancelled",
                user_id=user_id,
                subscription_id=subscription_id,
            )

        self.ledger.record_local("unsubscribe", subscription_id, user_id, outcome=RELEASED)
        updated = self._write_after_provider_change(
            user_id,
            subscription_id,
            "unsubscribe",
            subscription_tier=None,
            stripe_subscription_id=None,
            subscription_active=False,
        )
        log_event("info", "billing.unsubscribe.completed", user_id=user_id, subscription_id=subscription_id)
        return updated

    def resync_profile(self, user_id: str) -> Profile:
        """Re-read the provider subscription and repair a drifted profile."""
        profile = self.store.find(user_id)
        if profile is None:
            raise NotFoundError("No profile found", code="profile_not_found")
        if not profile.stripe_subscription_id:
            return profile

        subscription_id = profile.stripe_subscription_id
        try:
            snapshot = self.gateway.retrieve_subscription(subscription_id)
        except NotFoundError:
            snapshot = None

        if snapshot is None or snapshot.status in ENDED_STATUSES:
            self.ledger.record_local("resync", subscription_id, user_id, outcome=RELEASED)
            fields = dict(subscription_tier=None, stripe_subscription_id=None, subscription_active=False)
        elif snapshot.status in ACTIVE_STATUSES:
            tier = self.catalog.interval_for_price(snapshot.price_id) or profile.subscription_tier
            fields = dict(subscription_tier=tier, subscription_active=tier is not None)
        else:
            fields = dict(subscription_active=False)

        updated = self.store.update(user_id, **fields)
        if updated != profile:
            log_event(
                "warning",
                "billing.resync.repaired",
                user_id=user_id,
                subscription_id=subscription_id,
                extra={"from": profile.state.value, "to": updated.state.value},
            )
        return updated

    # ---- provider events ----

    def apply_checkout_completed(self, event: BillingEvent) -> Profile:
        metadata = event.metadata
        user_id = _first(metadata, USER_ID_KEYS)
        plan = _first(metadata, PLAN_KEYS)
        subscription_id = _object_id(event.data.get("subscription"))

        log_event(
            "info",
            "billing.webhook.checkout_completed",
            user_id=user_id,
            subscription_id=subscription_id,
            event_id=event.id,
            extra={"plan": plan, "session_id": event.data.get("id")},
        )

        if not user_id:
            raise ValidationError("No userId found in session metadata", code="event_metadata_missing")
        if not plan:
            raise ValidationError("No planInterval found in session metadata", code="event_metadata_missing")
        if not subscription_id:
            raise ValidationError("No subscription ID found in session", code="event_metadata_missing")
        if plan not in TIERS:
            raise ValidationError(f"Unknown plan interval in session metadata: {plan}", code="invalid_plan")

        try:
            updated = self.store.update(
                user_id,
                subscription_tier=plan,
                stripe_subscription_id=subscription_id,
                subscription_active=True,
            )
        except NotFoundError:
            raise CorrelationError(f"No profile found for user {user_id}")

        log_event("info", "billing.webhook.subscription_activated", user_id=user_id, subscription_id=subscription_id)
        return updated

    def _profile_for_subscription(self, subscription_id: str, event: BillingEvent) -> Optional[Profile]:
        profile = self.store.find_by_subscription_id(subscription_id)
        if profile is not None:
            return profile
        if self.ledger.was_released(subscription_id):
            log_event(
                "info",
                "billing.webhook.subscription_already_released",
                subscription_id=subscription_id,
                event_id=event.id,
                event_type=event.type,
            )
            return None
        log_event(
            "error",
            "billing.webhook.correlation_failed",
            subscription_id=subscription_id,
            event_id=event.id,
            event_type=event.type,
            error_code=CorrelationError.code,
        )
        raise CorrelationError(f"No profile found for subscription {subscription_id}")

    def apply_payment_failed(self, event: BillingEvent) -> Optional[Profile]:
        subscription_id = invoice_subscription_id(event.data)
        log_event(
            "info",
            "billing.webhook.payment_failed",
            subscription_id=subscription_id,
            event_id=event.id,
            extra={"invoice_id": event.data.get("id")},
        )
        if not subscription_id:
            raise ValidationError("No subscription ID found in invoice", code="event_metadata_missing")

        profile = self._profile_for_subscription(subscription_id, event)
        if profile is None:
            return None

        updated = self.store.update(profile.user_id, subscription_active=False)
        log_event("info", "billing.webhook.subscription_past_due", user_id=profile.user_id, subscription_id=subscription_id)
        return updated

    def apply_subscription_deleted(self, event: BillingEvent) -> Optional[Profile]:
        subscription_id = event.data.get("id")
        log_event("info", "billing.webhook.subscription_deleted", subscription_id=subscription_id, event_id=event.id)
        if not subscription_id:
            raise ValidationError("No subscription ID found in event", code="event_metadata_missing")

        profile = self._profile_for_subscription(subscription_id, event)
        if profile is None:
            return None

        updated = self.store.update(
            profile.user_id,
            subscription_tier=None,
            stripe_subscription_id=None,
            subscription_active=False,
        )
        log_event("info", "billing.webhook.subscription_cancelled", user_id=profile.user_id, subscription_id=subscription_id)
        return updated
