"""
Health endpoints for operational monitoring. No secrets are exposed.
"""
import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from cryptowatch.core.database import check_connection, get_engine
from cryptowatch.core.logging import LOGGER_NAME, latency_bucket_ms

logger = logging.getLogger(LOGGER_NAME)

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "users",
    "subscriptions",
    "pending_payments",
    "billing_events",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    start = time.perf_counter()
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception as e:
        logger.error(f"[readyz] table check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok", "db_latency": latency_bucket_ms((time.perf_counter() - start) * 1000)}
