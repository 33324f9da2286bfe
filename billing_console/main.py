from __future__ import annotations

from fastapi import FastAPI, HTTPException

from billing_console.api.routers import (
    analytics,
    catalog,
    credits,
    customers,
    ingestion,
    invoice_runs,
    invoices,
)
from billing_console.infra.audit import audit_recorder
from billing_console.infra.cache import check_redis_ready
from billing_console.infra.config import CACHE_BACKEND
from billing_console.infra.db import check_db_ready
from billing_console.infra.events import event_bus
from billing_console.infra.logging_setup import configure_logging

configure_logging()

app = FastAPI(
    title="billing-console",
    description="Reseller billing pipeline: ingestion, rules, pricing, credits and invoicing.",
    version="0.1.0",
)

audit_recorder.install(event_bus)

app.include_router(customers.router, prefix="/api/billing", tags=["customers"])
app.include_router(catalog.router, prefix="/api/billing", tags=["catalog"])
app.include_router(credits.router, prefix="/api/billing", tags=["credits"])
app.include_router(ingestion.router, prefix="/api/ingestion", tags=["ingestion"])
app.include_router(invoice_runs.router, prefix="/api/invoice-runs", tags=["invoice-runs"])
app.include_router(invoices.router, prefix="/api/invoices", tags=["invoices"])
app.include_router(analytics.router, prefix="/api/analytics", tags=["analytics"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_required = CACHE_BACKEND == "redis"
    redis_ok = check_redis_ready() if redis_required else True
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": ("ok" if redis_ok else "fail") if redis_required else "skipped",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
