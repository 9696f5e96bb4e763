"""
Billing API routes.

- GET  /api/plans: Subscription plan catalog
- POST /api/checkout: Create a hosted checkout session
- POST /api/webhook: Handle Stripe webhooks
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from mealplan.api.deps import get_catalog, get_ingestor, get_reconciler
from mealplan.core.errors import error_payload, extract_request_id
from mealplan.features.billing.reconciliation import ReconciliationEngine
from mealplan.features.billing.webhooks import WebhookIngestor
from mealplan.features.plans.catalog import PlanCatalog
from mealplan.models.plan import Plan


router = APIRouter(prefix="/api", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Checkout request; every field is checked by the reconciler so the error text stays uniform."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    plan_type: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None


class CheckoutResponse(BaseModel):
    url: str


class PlansResponse(BaseModel):
    plans: List[Plan]


@router.get("/plans", response_model=PlansResponse)
def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    return {"plans": catalog.list_plans()}


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(body: CheckoutRequest, reconciler: ReconciliationEngine = Depends(get_reconciler)):
    """
    Create Stripe checkout session.

    Returns:
        {"url": "https://checkout.stripe.com/..."}

    Errors:
        400: Missing field or unknown plan type
        502/503: Stripe API error
    """
    url = reconciler.start_checkout(body.plan_type, body.user_id, body.email)
    return {"url": url}


@router.post("/webhook")
async def handle_webhook(request: Request, ingestor: WebhookIngestor = Depends(get_ingestor)):
    """
    Handle Stripe webhook events.

    The signature is checked against the raw body, so the body is read
    before any parsing. Processing touches the database and runs in the
    threadpool.

    Returns:
        200 {"received": true} for applied, duplicate, stale and ignored events

    Errors:
        400: Invalid signature/payload, or the event could not be applied
        503: Database or provider temporarily unavailable (Stripe retries)
    """
    body = await request.body()
    outcome = await run_in_threadpool(ingestor.ingest, body, request.headers.get("stripe-signature"))

    if outcome.ok:
        return {"received": True, "status": outcome.status.value}

    rid = extract_request_id(request)
    code = outcome.error_kind.value if outcome.error_kind else outcome.status.value
    response = JSONResponse(
        status_code=outcome.status_code,
        content=error_payload(code, outcome.message or "Webhook processing failed", rid),
    )
    response.headers["x-request-id"] = rid
    return response
