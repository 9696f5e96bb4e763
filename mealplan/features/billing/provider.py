"""
Billing gateway protocol.

Defines the interface to the billing provider (Stripe) and the normalized
values passed between the gateway and the reconciliation engine.
This allows swapping providers (or a fake in tests) without changing
business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider subscription state relevant to reconciliation."""
    id: str
    status: str  # active, past_due, canceled, unpaid, incomplete, ...
    item_id: Optional[str]
    price_id: Optional[str]
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class BillingEvent:
    """Verified webhook event."""
    id: str
    type: str
    created: int  # unix timestamp assigned by the provider
    data: Dict[str, Any] = field(default_factory=dict)  # event.data.object

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.data.get("metadata") or {}


class BillingGateway(Protocol):
    """
    Protocol for billing providers.

    Every method is a blocking network call bounded by the provider timeout.

    Raises (all methods):
        TransientProviderError: network failure, timeout, rate limit, provider 5xx
        NotFoundError: referenced subscription does not exist
        ProviderError: any other provider-side rejection
    """

    def create_checkout_session(
        self,
        price_id: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> str:
        """
        Create a hosted checkout session for a subscription.

        Returns:
            Checkout session URL
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def update_subscription(
        self,
        subscription_id: str,
        *,
        item_id: Optional[str] = None,
        new_price_id: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> SubscriptionSnapshot:
        """
        Update a subscription. Changing the price requires item_id and
        creates prorations.
        """
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        ...

    def verify_and_parse_event(self, raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> BillingEvent:
        """
        Verify the webhook signature over the exact raw bytes and decode the event.

        Raises:
            SignatureInvalidError: header missing, secret missing, signature
                mismatch, stale timestamp, or undecodable payload
        """
        ...
