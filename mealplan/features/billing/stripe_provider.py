"""
Stripe billing gateway.

Implements the BillingGateway protocol with the Stripe SDK. Each instance
owns its own StripeClient (no module-level api_key) with an explicit
HTTP timeout.
"""
import json
from typing import Dict, Any, Optional

import stripe

from mealplan.core.errors import (
    NotFoundError,
    ProviderError,
    SignatureInvalidError,
    TransientProviderError,
)
from mealplan.features.billing.provider import BillingEvent, SubscriptionSnapshot


def _get(obj: Any, key: str, default: Any = None) -> Any:
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _translate_error(e: stripe.StripeError, action: str) -> Exception:
    """Map a Stripe SDK error onto the service error taxonomy."""
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientProviderError(f"Stripe {action} failed: {e.user_message or e}")
    if isinstance(e, stripe.InvalidRequestError) and (e.code == "resource_missing" or e.http_status == 404):
        return NotFoundError(f"Stripe {action} failed: {e.user_message or e}", code="subscription_not_found")
    if isinstance(e, stripe.APIError) or (e.http_status or 0) >= 500:
        return TransientProviderError(f"Stripe {action} failed: {e.user_message or e}")
    return ProviderError(f"Stripe {action} failed: {e.user_message or e}")


def snapshot_from_subscription(sub: Any) -> SubscriptionSnapshot:
    items = _get(_get(sub, "items", {}), "data", []) or []
    first = items[0] if items else None
    return SubscriptionSnapshot(
        id=_get(sub, "id"),
        status=_get(sub, "status", "unknown"),
        item_id=_get(first, "id"),
        price_id=_get(_get(first, "price", {}), "id"),
        cancel_at_period_end=bool(_get(sub, "cancel_at_period_end", False)),
    )


class StripeGateway:
    """Stripe implementation of BillingGateway protocol."""

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        timeout_seconds: int = 20,
        max_network_retries: int = 1,
        webhook_tolerance_seconds: int = 300,
        client: Optional[Any] = None,
    ):
        """
        Args:
            secret_key: Stripe secret key. May be None when only webhook
                verification is needed (API calls then fail with ProviderError).
            timeout_seconds: Per-request HTTP timeout
            max_network_retries: SDK-level retries of idempotent network failures
            webhook_tolerance_seconds: Accepted age of a signature timestamp
            client: Preconstructed client (tests)
        """
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        if client is not None:
            self._client = client
        elif secret_key:
            self._client = stripe.StripeClient(
                secret_key,
                http_client=stripe.RequestsClient(timeout=timeout_seconds),
                max_network_retries=max_network_retries,
            )
        else:
            self._client = None

    @property
    def client(self):
        if self._client is None:
            raise ProviderError("STRIPE_SECRET_KEY not configured", code="billing_disabled")
        return self._client

    def create_checkout_session(
        self,
        price_id: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> str:
        """Create Stripe checkout session in subscription mode."""
        try:
            session = self.client.v1.checkout.sessions.create(
                params={
                    "payment_method_types": ["card"],
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "customer_email": customer_email,
                    "mode": "subscription",
                    "metadata": metadata,
                    "subscription_data": {"metadata": metadata},
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                }
            )
        except stripe.StripeError as e:
            raise _translate_error(e, "checkout session creation")
        url = _get(session, "url")
        if not url:
            raise ProviderError("Stripe checkout session has no URL")
        return url

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            sub = self.client.v1.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _translate_error(e, "subscription retrieval")
        return snapshot_from_subscription(sub)

    def update_subscription(
        self,
        subscription_id: str,
        *,
        item_id: Optional[str] = None,
        new_price_id: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> SubscriptionSnapshot:
        params: Dict[str, Any] = {}
        if new_price_id:
            if not item_id:
                raise ValueError("item_id is required to change the subscription price")
            params["items"] = [{"id": item_id, "price": new_price_id}]
            params["proration_behavior"] = "create_prorations"
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end
        try:
            sub = self.client.v1.subscriptions.update(subscription_id, params=params)
        except stripe.StripeError as e:
            raise _translate_error(e, "subscription update")
        return snapshot_from_subscription(sub)

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            self.client.v1.subscriptions.cancel(subscription_id)
        except stripe.StripeError as e:
            raise _translate_error(e, "subscription cancellation")

    def verify_and_parse_event(self, raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> BillingEvent:
        """Verify Stripe webhook signature on the raw bytes, then decode."""
        if not secret:
            raise SignatureInvalidError("STRIPE_WEBHOOK_SECRET not configured", code="webhook_secret_missing")
        if not signature_header:
            raise SignatureInvalidError("Missing stripe-signature header", code="signature_missing")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise SignatureInvalidError("Webhook payload is not valid UTF-8", code="payload_invalid")

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, tolerance=self.webhook_tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalidError(f"Invalid signature: {e.user_message or e}")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise SignatureInvalidError(f"Invalid payload: {e}", code="payload_invalid")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise SignatureInvalidError("Invalid payload: not a Stripe event", code="payload_invalid")

        try:
            data = (event.get("data") or {}).get("object") or {}
            if not isinstance(data, dict):
                raise TypeError("data.object is not an object")
            return BillingEvent(
                id=event["id"],
                type=event["type"],
                created=int(event.get("created") or 0),
                data=data,
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise SignatureInvalidError(f"Invalid payload: {e}", code="payload_invalid")
