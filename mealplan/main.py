"""
Application factory.

Run with:
    uvicorn mealplan.main:create_app --factory
or the `mealplan-api` console script.
"""
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from mealplan.api import billing, health, mealplans, profile
from mealplan.api.deps import AppServices
from mealplan.core.auth import IdentityResolver
from mealplan.core.config import Settings, settings as default_settings, validate_config
from mealplan.core.database import build_engine, build_session_factory, create_all_tables
from mealplan.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from mealplan.core.logging import LOGGER_NAME, configure_logging
from mealplan.core.middleware.request_id import RequestIdMiddleware
from mealplan.core.validation import validate_env
from mealplan.features.billing.ledger import EventLedger
from mealplan.features.billing.provider import BillingGateway
from mealplan.features.billing.reconciliation import ReconciliationEngine
from mealplan.features.billing.stripe_provider import StripeGateway
from mealplan.features.billing.webhooks import WebhookIngestor
from mealplan.features.mealplans.service import MealPlanGenerator
from mealplan.features.plans.catalog import PlanCatalog
from mealplan.features.profiles.store import ProfileStore


def build_services(
    cfg: Settings,
    *,
    gateway: Optional[BillingGateway] = None,
    generator: Optional[MealPlanGenerator] = None,
    database_url: Optional[str] = None,
    fetch_jwks: Optional[Callable[[str], Dict[str, Any]]] = None,
    clock: Callable[[], float] = time.time,
) -> AppServices:
    """Construct every long-lived collaborator once per process."""
    db_engine = build_engine(cfg, database_url)
    session_factory = build_session_factory(db_engine)

    store = ProfileStore(session_factory)
    catalog = PlanCatalog(cfg.price_ids)
    ledger = EventLedger(session_factory, clock=clock, clock_skew_seconds=cfg.LEDGER_CLOCK_SKEW_SECONDS)
    if gateway is None:
        gateway = StripeGateway(
            cfg.STRIPE_SECRET_KEY,
            timeout_seconds=cfg.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=cfg.STRIPE_MAX_NETWORK_RETRIES,
            webhook_tolerance_seconds=cfg.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    if generator is None:
        generator = MealPlanGenerator(
            cfg.GROQ_API_KEY,
            model=cfg.GENERATION_MODEL,
            base_url=cfg.GENERATION_BASE_URL,
            timeout_seconds=cfg.GENERATION_TIMEOUT_SECONDS,
        )
    reconciler = ReconciliationEngine(store, catalog, gateway, ledger, cfg.BASE_URL)
    ingestor = WebhookIngestor(gateway, reconciler, ledger, cfg.STRIPE_WEBHOOK_SECRET)
    identity = IdentityResolver(cfg, fetch_jwks) if fetch_jwks else IdentityResolver(cfg)

    return AppServices(
        settings=cfg,
        db_engine=db_engine,
        store=store,
        catalog=catalog,
        gateway=gateway,
        ledger=ledger,
        reconciler=reconciler,
        ingestor=ingestor,
        generator=generator,
        identity=identity,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger(LOGGER_NAME)
    logger.info("Starting meal plan backend...")
    app.state.startup_time = time.time()
    create_all_tables(app.state.services.db_engine)
    try:
        yield
    finally:
        app.state.services.db_engine.dispose()
        logger.info("Stopping meal plan backend...")


def create_app(cfg: Optional[Settings] = None, **overrides) -> FastAPI:
    """
    Build the FastAPI application.

    Keyword overrides are passed to build_services (gateway, generator,
    database_url, fetch_jwks, clock) so tests can swap external clients.
    """
    cfg = cfg or default_settings
    configure_logging(cfg.ENV)
    validate_env(settings_obj=cfg)
    validate_config(settings_obj=cfg)

    app = FastAPI(title="Meal Plan Backend", lifespan=lifespan)
    app.state.services = build_services(cfg, **overrides)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(profile.router)
    app.include_router(billing.router)
    app.include_router(mealplans.router)
    app.include_router(health.router)
    return app


def main() -> None:
    import uvicorn

    load_dotenv()
    uvicorn.run(
        "mealplan.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
