"""
Stripe gateway adapter: request shapes, error mapping, webhook verification.

The StripeClient is a Mock; signatures are computed with the real scheme.
"""
import json
import time
from unittest.mock import Mock

import pytest
import stripe

from mealplan.core.errors import (
    ErrorKind,
    NotFoundError,
    ProviderError,
    SignatureInvalidError,
    TransientProviderError,
)
from mealplan.features.billing.stripe_provider import StripeGateway, snapshot_from_subscription
from mealplan.tests.mocks import WEBHOOK_SECRET, checkout_completed, sign_payload


def subscription_payload(sub_id="sub_1", price_id="price_week", status="active"):
    return {
        "id": sub_id,
        "status": status,
        "cancel_at_period_end": False,
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


@pytest.fixture
def stripe_client():
    return Mock()


@pytest.fixture
def stripe_gateway(stripe_client):
    return StripeGateway(None, client=stripe_client)


def test_create_checkout_session_params(stripe_gateway, stripe_client):
    stripe_client.v1.checkout.sessions.create.return_value = {"id": "cs_1", "url": "https://checkout.stripe.com/cs_1"}

    url = stripe_gateway.create_checkout_session(
        price_id="price_week",
        customer_email="alice@example.com",
        success_url="http://localhost:3000/?SESSION_ID={CHECKOUT_SESSION_ID}",
        cancel_url="http://localhost:3000/subscribe",
        metadata={"userId": "user_alice", "planInterval": "week"},
    )

    assert url == "https://checkout.stripe.com/cs_1"
    params = stripe_client.v1.checkout.sessions.create.call_args.kwargs["params"]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_week", "quantity": 1}]
    assert params["customer_email"] == "alice@example.com"
    assert params["metadata"] == {"userId": "user_alice", "planInterval": "week"}
    assert params["subscription_data"]["metadata"] == params["metadata"]


def test_checkout_session_without_url_is_provider_error(stripe_gateway, stripe_client):
    stripe_client.v1.checkout.sessions.create.return_value = {"id": "cs_1", "url": None}
    with pytest.raises(ProviderError):
        stripe_gateway.create_checkout_session("price_week", "a@example.com", "s", "c", {})


def test_snapshot_reads_first_item():
    snapshot = snapshot_from_subscription(subscription_payload())
    assert snapshot.id == "sub_1"
    assert snapshot.item_id == "si_1"
    assert snapshot.price_id == "price_week"
    assert snapshot.cancel_at_period_end is False


def test_update_subscription_with_new_price_prorates(stripe_gateway, stripe_client):
    stripe_client.v1.subscriptions.update.return_value = subscription_payload(price_id="price_year")

    snapshot = stripe_gateway.update_subscription(
        "sub_1", item_id="si_1", new_price_id="price_year", cancel_at_period_end=True
    )

    args = stripe_client.v1.subscriptions.update.call_args
    assert args.args == ("sub_1",)
    assert args.kwargs["params"] == {
        "items": [{"id": "si_1", "price": "price_year"}],
        "proration_behavior": "create_prorations",
        "cancel_at_period_end": True,
    }
    assert snapshot.price_id == "price_year"


def test_update_price_requires_item_id(stripe_gateway):
    with pytest.raises(ValueError):
        stripe_gateway.update_subscription("sub_1", new_price_id="price_year")


def test_connection_error_is_transient(stripe_gateway, stripe_client):
    stripe_client.v1.subscriptions.retrieve.side_effect = stripe.APIConnectionError("connection reset")
    with pytest.raises(TransientProviderError) as exc:
        stripe_gateway.retrieve_subscription("sub_1")
    assert exc.value.kind == ErrorKind.TRANSIENT


def test_missing_subscription_is_not_found(stripe_gateway, stripe_client):
    stripe_client.v1.subscriptions.cancel.side_effect = stripe.InvalidRequestError(
        "No such subscription: 'sub_1'", "id", code="resource_missing", http_status=404
    )
    with pytest.raises(NotFoundError):
        stripe_gateway.cancel_subscription("sub_1")


def test_invalid_request_is_provider_error(stripe_gateway, stripe_client):
    stripe_client.v1.subscriptions.update.side_effect = stripe.InvalidRequestError(
        "Invalid price", "price", code="parameter_invalid", http_status=400
    )
    with pytest.raises(ProviderError):
        stripe_gateway.update_subscription("sub_1", cancel_at_period_end=True)


def test_api_calls_without_secret_key_are_disabled():
    gateway = StripeGateway(None)
    with pytest.raises(ProviderError) as exc:
        gateway.retrieve_subscription("sub_1")
    assert exc.value.code == "billing_disabled"


# ---- webhook verification ----

def test_verify_valid_signature(stripe_gateway):
    payload = checkout_completed("evt_1", "user_alice", "week", "sub_1", created=1_700_000_000)
    event = stripe_gateway.verify_and_parse_event(payload, sign_payload(payload), WEBHOOK_SECRET)

    assert event.id == "evt_1"
    assert event.type == "checkout.session.completed"
    assert event.created == 1_700_000_000
    assert event.metadata == {"userId": "user_alice", "planInterval": "week"}


def test_verify_rejects_missing_header(stripe_gateway):
    payload = checkout_completed("evt_1", "user_alice", "week", "sub_1", created=1)
    with pytest.raises(SignatureInvalidError) as exc:
        stripe_gateway.verify_and_parse_event(payload, None, WEBHOOK_SECRET)
    assert exc.value.code == "signature_missing"


def test_verify_rejects_missing_secret(stripe_gateway):
    payload = checkout_completed("evt_1", "user_alice", "week", "sub_1", created=1)
    with pytest.raises(SignatureInvalidError) as exc:
        stripe_gateway.verify_and_parse_event(payload, sign_payload(payload), None)
    assert exc.value.code == "webhook_secret_missing"


def test_verify_rejects_wrong_secret(stripe_gateway):
    payload = checkout_completed("evt_1", "user_alice", "week", "sub_1", created=1)
    with pytest.raises(SignatureInvalidError) as exc:
        stripe_gateway.verify_and_parse_event(payload, sign_payload(payload, secret="whsec_other"), WEBHOOK_SECRET)
    assert exc.value.code == "signature_invalid"


def test_verify_rejects_reserialized_body(stripe_gateway):
    payload = checkout_completed("evt_1", "user_alice", "week", "sub_1", created=1)
    header = sign_payload(payload)
    reserialized = json.dumps(json.loads(payload), indent=2).encode("utf-8")
    with pytest.raises(SignatureInvalidError):
        stripe_gateway.verify_and_parse_event(reserialized, header, WEBHOOK_SECRET)


def test_verify_rejects_old_timestamp(stripe_gateway):
    payload = checkout_completed("evt_1", "user_alice", "week", "sub_1", created=1)
    header = sign_payload(payload, timestamp=int(time.time()) - 3600)
    with pytest.raises(SignatureInvalidError):
        stripe_gateway.verify_and_parse_event(payload, header, WEBHOOK_SECRET)


def test_verify_rejects_signed_non_event(stripe_gateway):
    payload = b'{"hello": "world"}'
    with pytest.raises(SignatureInvalidError) as exc:
        stripe_gateway.verify_and_parse_event(payload, sign_payload(payload), WEBHOOK_SECRET)
    assert exc.value.code == "payload_invalid"


@pytest.mark.parametrize("overrides", [
    {"created": "soon"},
    {"created": [1]},
    {"data": "not-an-object"},
    {"data": {"object": "cs_1"}},
])
def test_verify_rejects_signed_malformed_event(stripe_gateway, overrides):
    event = {"id": "evt_1", "type": "checkout.session.completed", "created": 1, "data": {"object": {}}}
    event.update(overrides)
    payload = json.dumps(event).encode("utf-8")
    with pytest.raises(SignatureInvalidError) as exc:
        stripe_gateway.verify_and_parse_event(payload, sign_payload(payload), WEBHOOK_SECRET)
    assert exc.value.code == "payload_invalid"
