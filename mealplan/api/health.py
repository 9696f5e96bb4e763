"""Liveness and readiness probes."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from mealplan.api.deps import AppServices, get_services
from mealplan.core.database import missing_tables
from mealplan.core.logging import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(services: AppServices = Depends(get_services)):
    """Readiness check: DB connectivity + required tables."""
    try:
        with services.db_engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        missing = missing_tables(services.db_engine)
    except SQLAlchemyError as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    return {"status": "ok"}
