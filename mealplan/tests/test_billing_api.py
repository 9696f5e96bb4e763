"""Plans, checkout and webhook routes."""
from mealplan.core.errors import ProviderError, TransientProviderError
from mealplan.tests.mocks import checkout_completed, make_event, sign_payload

T0 = 1_700_000_000


def post_webhook(client, payload, header=None):
    headers = {"Content-Type": "application/json"}
    signature = header if header is not None else sign_payload(payload)
    if signature:
        headers["stripe-signature"] = signature
    return client.post("/api/webhook", content=payload, headers=headers)


def test_list_plans(client):
    response = client.get("/api/plans")

    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [p["interval"] for p in plans] == ["week", "month", "year"]
    assert plans[1]["isPopular"] is True
    assert all("priceId" not in p for p in plans)


def test_checkout_returns_url(client, gateway):
    response = client.post(
        "/api/checkout",
        json={"planType": "week", "userId": "user_alice", "email": "alice@example.com"},
    )

    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.stripe.test/c/pay/cs_test_1"}
    assert gateway.call_names() == ["create_checkout_session"]


def test_checkout_day_plan_rejected_without_provider_call(client, gateway):
    response = client.post(
        "/api/checkout",
        json={"planType": "day", "userId": "user_alice", "email": "alice@example.com"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_plan"
    assert gateway.calls == []


def test_checkout_missing_fields(client, gateway):
    response = client.post("/api/checkout", json={"planType": "week", "userId": "user_alice"})

    assert response.status_code == 400
    assert response.json()["detail"] == "planType, userId and email are required"
    assert gateway.calls == []


def test_checkout_provider_outage_is_503(client, gateway):
    gateway.fail_with = TransientProviderError("Stripe checkout session creation failed: timeout")
    response = client.post(
        "/api/checkout",
        json={"planType": "month", "userId": "user_alice", "email": "alice@example.com"},
    )
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "provider_unavailable"


def test_checkout_provider_rejection_is_502(client, gateway):
    gateway.fail_with = ProviderError("Stripe checkout session creation failed: No such price")
    response = client.post(
        "/api/checkout",
        json={"planType": "month", "userId": "user_alice", "email": "alice@example.com"},
    )
    assert response.status_code == 502


def test_webhook_acknowledges_applied_event(client, store):
    store.create("user_alice", "alice@example.com")

    response = post_webhook(client, checkout_completed("evt_1", "user_alice", "year", "sub_1", T0))

    assert response.status_code == 200
    assert response.json()["received"] is True
    assert store.find("user_alice").subscription_tier == "year"


def test_webhook_bad_signature_is_400(client, store):
    store.create("user_alice", "alice@example.com")
    payload = checkout_completed("evt_1", "user_alice", "year", "sub_1", T0)

    response = post_webhook(client, payload, header=sign_payload(payload, secret="whsec_wrong"))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "signature_invalid"
    assert store.find("user_alice").subscription_active is False


def test_webhook_missing_signature_is_400(client):
    payload = checkout_completed("evt_1", "user_alice", "year", "sub_1", T0)
    response = post_webhook(client, payload, header="")
    assert response.status_code == 400


def test_webhook_unhandled_type_is_200(client):
    response = post_webhook(client, make_event("evt_9", "invoice.paid", {"id": "in_1"}, T0))
    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "ignored"}


def test_webhook_correlation_failure_is_400(client):
    response = post_webhook(client, checkout_completed("evt_1", "user_ghost", "week", "sub_1", T0))
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "correlation"
    assert response.headers["x-request-id"]
