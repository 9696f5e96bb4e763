"""Reconciliation engine: user-initiated transitions and provider resync."""
import logging

import pytest

from mealplan.core.errors import NotFoundError, StoreUnavailableError, TransientProviderError, ValidationError
from mealplan.features.billing.provider import SubscriptionSnapshot
from mealplan.models.profile import BillingState


def subscribe(store, gateway, user_id="user_alice", tier="week", sub_id="sub_1"):
    store.create(user_id, f"{user_id}@example.com")
    gateway.add_subscription(sub_id, f"price_{tier}")
    return store.update(user_id, subscription_tier=tier, stripe_subscription_id=sub_id, subscription_active=True)


# ---- checkout ----

def test_start_checkout_creates_session_without_touching_profile(reconciler, store, gateway):
    store.create("user_alice", "alice@example.com")

    url = reconciler.start_checkout("month", "user_alice", "alice@example.com")

    assert url.startswith("https://checkout.stripe.test/")
    name, price_id, email, success_url, cancel_url, metadata = gateway.calls[0]
    assert name == "create_checkout_session"
    assert price_id == "price_month"
    assert email == "alice@example.com"
    assert success_url == "http://localhost:3000/?SESSION_ID={CHECKOUT_SESSION_ID}"
    assert cancel_url == "http://localhost:3000/subscribe"
    assert metadata == {"userId": "user_alice", "planInterval": "month"}
    assert store.find("user_alice").state == BillingState.UNSUBSCRIBED


def test_checkout_rejects_unknown_plan_without_provider_call(reconciler, gateway):
    with pytest.raises(ValidationError) as exc:
        reconciler.start_checkout("day", "user_alice", "alice@example.com")
    assert exc.value.code == "invalid_plan"
    assert gateway.calls == []


@pytest.mark.parametrize("plan_type,user_id,email", [
    (None, "user_alice", "alice@example.com"),
    ("week", None, "alice@example.com"),
    ("week", "user_alice", ""),
])
def test_checkout_requires_all_fields(reconciler, gateway, plan_type, user_id, email):
    with pytest.raises(ValidationError):
        reconciler.start_checkout(plan_type, user_id, email)
    assert gateway.calls == []


def test_checkout_transient_provider_failure_propagates(reconciler, gateway):
    gateway.fail_with = TransientProviderError("timeout")
    with pytest.raises(TransientProviderError):
        reconciler.start_checkout("week", "user_alice", "alice@example.com")


# ---- change plan ----

def test_change_plan_updates_provider_then_profile(reconciler, store, gateway):
    subscribe(store, gateway, tier="week")

    profile = reconciler.change_plan("user_alice", "year")

    assert ("update_subscription", "sub_1", "si_sub_1", "price_year", True) in gateway.calls
    assert profile.state == BillingState.ACTIVE
    assert profile.subscription_tier == "year"
    assert profile.stripe_subscription_id == "sub_1"


@pytest.mark.parametrize("new_plan,message", [
    (None, "No new plan provided"),
    ("day", "Invalid plan type: day"),
])
def test_change_plan_rejects_bad_input(reconciler, store, gateway, new_plan, message):
    subscribe(store, gateway)
    with pytest.raises(ValidationError) as exc:
        reconciler.change_plan("user_alice", new_plan)
    assert exc.value.message == message
    assert gateway.calls == []


def test_change_plan_without_profile(reconciler):
    with pytest.raises(NotFoundError):
        reconciler.change_plan("user_ghost", "year")


def test_change_plan_without_subscription(reconciler, store, gateway):
    store.create("user_alice", "alice@example.com")
    with pytest.raises(ValidationError) as exc:
        reconciler.change_plan("user_alice", "year")
    assert exc.value.code == "no_subscription"
    assert gateway.calls == []


def test_change_plan_without_subscription_items(reconciler, store, gateway):
    subscribe(store, gateway)
    gateway.subscriptions["sub_1"] = SubscriptionSnapshot(id="sub_1", status="active", item_id=None, price_id=None)

    with pytest.raises(ValidationError) as exc:
        reconciler.change_plan("user_alice", "year")
    assert exc.value.message == "No active subscription items found"
    assert "update_subscription" not in gateway.call_names()


def test_change_plan_store_failure_is_logged_not_rolled_back(reconciler, store, gateway, monkeypatch, caplog):
    subscribe(store, gateway)

    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("connection refused")

    monkeypatch.setattr(store, "update", unavailable)
    with caplog.at_level(logging.ERROR, logger="mealplan"):
        with pytest.raises(StoreUnavailableError):
            reconciler.change_plan("user_alice", "year")

    assert gateway.subscriptions["sub_1"].price_id == "price_year"
    records = [r for r in caplog.records if r.getMessage() == "billing.plan_change.partial_failure"]
    assert records
    assert records[0].error_code == "partial_failure"
    assert records[0].subscription_id == "sub_1"


# ---- unsubscribe ----

def test_unsubscribe_cancels_immediately_and_clears_profile(reconciler, store, gateway):
    subscribe(store, gateway, tier="month")

    profile = reconciler.unsubscribe("user_alice")

    assert gateway.calls[-1] == ("cancel_subscription", "sub_1")
    assert profile.state == BillingState.UNSUBSCRIBED
    assert profile.subscription_tier is None
    assert profile.stripe_subscription_id is None


def test_unsubscribe_tolerates_subscription_already_gone(reconciler, store, gateway):
    subscribe(store, gateway)
    del gateway.subscriptions["sub_1"]

    profile = reconciler.unsubscribe("user_alice")

    assert profile.state == BillingState.UNSUBSCRIBED


def test_unsubscribe_without_subscription(reconciler, store, gateway):
    store.create("user_alice", "alice@example.com")
    with pytest.raises(ValidationError):
        reconciler.unsubscribe("user_alice")
    assert gateway.calls == []


def test_unsubscribe_provider_outage_keeps_profile(reconciler, store, gateway):
    subscribe(store, gateway)
    gateway.fail_with = TransientProviderError("timeout")

    with pytest.raises(TransientProviderError):
        reconciler.unsubscribe("user_alice")
    assert store.find("user_alice").state == BillingState.ACTIVE


# ---- resync ----

def test_resync_clears_profile_when_subscription_missing(reconciler, store, gateway):
    subscribe(store, gateway)
    del gateway.subscriptions["sub_1"]

    profile = reconciler.resync_profile("user_alice")

    assert profile.state == BillingState.UNSUBSCRIBED


def test_resync_follows_provider_price(reconciler, store, gateway):
    subscribe(store, gateway, tier="week")
    gateway.add_subscription("sub_1", "price_year")

    profile = reconciler.resync_profile("user_alice")

    assert profile.subscription_tier == "year"
    assert profile.subscription_active is True


def test_resync_marks_unpaid_subscription_past_due(reconciler, store, gateway):
    subscribe(store, gateway, tier="month")
    gateway.add_subscription("sub_1", "price_month", status="past_due")

    profile = reconciler.resync_profile("user_alice")

    assert profile.state == BillingState.PAST_DUE
    assert profile.subscription_tier == "month"


def test_resync_without_subscription_is_noop(reconciler, store, gateway):
    store.create("user_alice", "alice@example.com")
    profile = reconciler.resync_profile("user_alice")
    assert profile.state == BillingState.UNSUBSCRIBED
    assert gateway.calls == []
