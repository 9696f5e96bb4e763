"""
Request-scoped access to the process-wide services.

create_app() builds one AppServices per process and stores it on
app.state; routes receive the pieces they need through these dependencies.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.engine import Engine

from mealplan.core.auth import Identity, IdentityResolver
from mealplan.core.config import Settings
from mealplan.core.errors import AuthError
from mealplan.features.billing.ledger import EventLedger
from mealplan.features.billing.provider import BillingGateway
from mealplan.features.billing.reconciliation import ReconciliationEngine
from mealplan.features.billing.webhooks import WebhookIngestor
from mealplan.features.mealplans.service import MealPlanGenerator
from mealplan.features.plans.catalog import PlanCatalog
from mealplan.features.profiles.store import ProfileStore


@dataclass
class AppServices:
    settings: Settings
    db_engine: Engine
    store: ProfileStore
    catalog: PlanCatalog
    gateway: BillingGateway
    ledger: EventLedger
    reconciler: ReconciliationEngine
    ingestor: WebhookIngestor
    generator: MealPlanGenerator
    identity: IdentityResolver


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_store(services: AppServices = Depends(get_services)) -> ProfileStore:
    return services.store


def get_catalog(services: AppServices = Depends(get_services)) -> PlanCatalog:
    return services.catalog


def get_reconciler(services: AppServices = Depends(get_services)) -> ReconciliationEngine:
    return services.reconciler


def get_ingestor(services: AppServices = Depends(get_services)) -> WebhookIngestor:
    return services.ingestor


def get_generator(services: AppServices = Depends(get_services)) -> MealPlanGenerator:
    return services.generator


def get_identity(request: Request, services: AppServices = Depends(get_services)) -> Optional[Identity]:
    """Caller identity, or None for anonymous requests."""
    return services.identity.resolve(request.headers)


def require_identity(identity: Optional[Identity] = Depends(get_identity)) -> Identity:
    if identity is None:
        raise AuthError("User unauthorized")
    return identity
