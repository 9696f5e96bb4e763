"""
Billing webhook ingestion.

1. Verify the signature over the raw, unparsed request body
2. Skip events this service does not handle (acknowledged, never retried)
3. Skip event ids already applied (idempotent redelivery)
4. Skip events older than the newest applied event for the subscription
5. Dispatch to exactly one reconciliation handler
6. Report the result as a WebhookOutcome; any failure maps to a non-2xx
   status so the provider retries the delivery
"""
import enum
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from mealplan.core.errors import AppError, ErrorKind, SignatureInvalidError
from mealplan.core.logging import log_event
from mealplan.features.billing import ledger as ledger_outcomes
from mealplan.features.billing.ledger import EventLedger
from mealplan.features.billing.provider import BillingEvent, BillingGateway
from mealplan.features.billing.reconciliation import (
    CHECKOUT_COMPLETED,
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_DELETED,
    ReconciliationEngine,
    subscription_id_for,
)


class WebhookStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    STALE = "stale"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class WebhookOutcome:
    status: WebhookStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status not in (WebhookStatus.REJECTED, WebhookStatus.FAILED)

    @property
    def status_code(self) -> int:
        if self.ok:
            return 200
        if self.error_kind == ErrorKind.TRANSIENT:
            return 503
        return 400


class WebhookIngestor:
    def __init__(self, gateway: BillingGateway, engine: ReconciliationEngine, ledger: EventLedger, webhook_secret: Optional[str]):
        self.gateway = gateway
        self.engine = engine
        self.ledger = ledger
        self.webhook_secret = webhook_secret
        self._handlers: Dict[str, Callable[[BillingEvent], object]] = {
            CHECKOUT_COMPLETED: engine.apply_checkout_completed,
            INVOICE_PAYMENT_FAILED: engine.apply_payment_failed,
            SUBSCRIPTION_DELETED: engine.apply_subscription_deleted,
        }

    @property
    def handled_event_types(self):
        return tuple(self._handlers)

    def ingest(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        try:
            event = self.gateway.verify_and_parse_event(raw_body, signature_header, self.webhook_secret)
        except SignatureInvalidError as e:
            log_event("warning", "billing.webhook.rejected", error_code=e.code, extra={"reason": e.message})
            return WebhookOutcome(WebhookStatus.REJECTED, error_kind=e.kind, message=e.message)

        handler = self._handlers.get(event.type)
        if handler is None:
            log_event("info", "billing.webhook.unhandled_type", event_id=event.id, event_type=event.type)
            return WebhookOutcome(WebhookStatus.IGNORED, event.id, event.type)

        try:
            return self._process(event, handler, raw_body)
        except AppError as e:
            kind, message = e.kind, e.message
            log_event(
                "error",
                "billing.webhook.failed",
                event_id=event.id,
                event_type=event.type,
                error_code=e.code,
                extra={"reason": e.message, "retryable": e.kind.retryable},
            )
        except Exception as e:
            kind, message = ErrorKind.INTERNAL, str(e) or e.__class__.__name__
            log_event(
                "error",
                "billing.webhook.failed",
                event_id=event.id,
                event_type=event.type,
                error_code="internal_error",
                exc_info=True,
            )

        self._record_failure(event, message)
        return WebhookOutcome(WebhookStatus.FAILED, event.id, event.type, error_kind=kind, message=message)

    def _process(self, event: BillingEvent, handler, raw_body: bytes) -> WebhookOutcome:
        if self.ledger.is_processed(event.id):
            log_event("info", "billing.webhook.duplicate", event_id=event.id, event_type=event.type)
            return WebhookOutcome(WebhookStatus.DUPLICATE, event.id, event.type)

        subscription_id = subscription_id_for(event)
        self.ledger.begin(event, subscription_id, raw_body)

        if self.ledger.is_stale(subscription_id, event.created):
            log_event(
                "warning",
                "billing.webhook.stale",
                subscription_id=subscription_id,
                event_id=event.id,
                event_type=event.type,
            )
            self.ledger.finish(event.id, ledger_outcomes.STALE)
            return WebhookOutcome(WebhookStatus.STALE, event.id, event.type)

        profile = handler(event)
        if profile is None:
            self.ledger.finish(event.id, ledger_outcomes.IGNORED)
            return WebhookOutcome(WebhookStatus.IGNORED, event.id, event.type)

        self.ledger.finish(event.id, ledger_outcomes.APPLIED, user_id=profile.user_id)
        return WebhookOutcome(WebhookStatus.ACCEPTED, event.id, event.type)

    def _record_failure(self, event: BillingEvent, message: str) -> None:
        try:
            self.ledger.finish(event.id, ledger_outcomes.FAILED, error=message)
        except AppError as e:
            log_event("error", "billing.webhook.ledger_write_failed", event_id=event.id, error_code=e.code)
