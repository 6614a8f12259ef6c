"""HandFull Billing – Gateway.

Serves the payment webhook, checkout/portal, fee-preview, contribution history
and usage endpoints, plus health and Prometheus metrics.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.billing.metering import metering_dispatcher
from app.core.db import SessionLocal, run_migrations
from app.core.instrumentation import router as metrics_router
from app.core.instrumentation import setup_instrumentation
from config.settings import Settings, get_settings

logger = structlog.get_logger()

VERSION = "1.0.0"

# --- Globals ---
settings: Settings = get_settings()


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    return origins or ["http://localhost:3000"]


def _enforce_startup_guards() -> None:
    if not settings.is_production:
        return

    weak_auth_secret = settings.auth_secret in {"", "change-me-long-random-secret", "changeme", "password123"}
    if weak_auth_secret:
        raise RuntimeError("Refusing startup in production due to weak/default secrets.")
    if not settings.stripe_secret_key or not settings.stripe_webhook_secret:
        raise RuntimeError("Refusing startup in production without Stripe secret key and webhook secret.")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: schema bootstrap and metering workers."""
    _enforce_startup_guards()
    run_migrations()
    metering_dispatcher.start()
    logger.info("handfull.gateway.startup", version=VERSION, env=settings.environment)

    yield
    await metering_dispatcher.stop()
    logger.info("handfull.gateway.shutdown")


app = FastAPI(
    title="HandFull Billing",
    description="HandFull – Contributions, subscriptions and usage accounting",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# --- Billing Router ---
from app.gateway.routers.billing import router as billing_router
app.include_router(billing_router)

# --- Usage Router ---
from app.gateway.routers.usage import router as usage_router
app.include_router(usage_router)

app.include_router(metrics_router)


# ──────────────────────────────────────────
# Health Endpoint
# ──────────────────────────────────────────

@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health endpoint – returns service status and database reachability."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception as exc:
        logger.warning("handfull.gateway.db_unavailable", error=str(exc))
        db_ok = False
    finally:
        db.close()
    return {
        "status": "ok" if db_ok else "degraded",
        "service": "handfull-billing",
        "version": VERSION,
        "database": "connected" if db_ok else "disconnected",
        "metering_pending": metering_dispatcher.pending,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
