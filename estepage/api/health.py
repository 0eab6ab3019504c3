"""Liveness and readiness endpoints."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from estepage.core.database import get_engine

logger = logging.getLogger("estepage")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "tenants",
    "tenant_subscriptions",
    "billing_events",
    "subscription_notices",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        present = set(inspect(get_engine()).get_table_names())
    except Exception as e:
        logger.warning("readyz.db_unavailable", extra={"error": str(e)})
        return JSONResponse(status_code=503, content={"status": "unavailable", "missing_tables": REQUIRED_TABLES})

    missing = [name for name in REQUIRED_TABLES if name not in present]
    if missing:
        return JSONResponse(status_code=503, content={"status": "unavailable", "missing_tables": missing})
    return {"status": "ready"}
