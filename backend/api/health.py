"""
Health and readiness endpoints.

Lightweight checks for operational monitoring; no secrets are returned.
"""

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from backend.core.database import check_connection, get_engine
from backend.core.logging import latency_bucket_ms, get_request_id
from backend.features.billing.service import billing_enabled

logger = logging.getLogger("suite")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "organizations",
    "billing_customers",
    "module_subscriptions",
    "billing_events",
    "billing_job_runs",
]


class DBHealth(BaseModel):
    connected: bool
    latency_ms: Optional[float] = None  # None when a fixed `now` is passed, for determinism
    tables_present: List[str] = []


class HealthResponse(BaseModel):
    ok: bool
    billing_enabled: bool
    db: DBHealth
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + entitlement tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/db", response_model=HealthResponse)
async def health_db(now: Optional[str] = Query(None)):
    """
    Database connectivity and the entitlement tables present.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    start = time.perf_counter()
    is_connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    tables: List[str] = []
    if is_connected:
        try:
            present = set(inspect(get_engine()).get_table_names())
            tables = [t for t in REQUIRED_TABLES if t in present]
        except Exception as e:
            logger.warning(f"[health] Failed to list tables: {e}")

    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "ok": is_connected,
            "latency_bucket": latency_bucket_ms(latency_ms if now is None else None),
        },
    )

    return HealthResponse(
        ok=is_connected,
        billing_enabled=billing_enabled(),
        db=DBHealth(
            connected=is_connected,
            latency_ms=None if now else latency_ms,
            tables_present=tables,
        ),
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
