# backend/portal/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import AsyncGenerator, Dict

from fastapi import APIRouter, FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .core.config import settings
from .core.constants import BRAND_NAME
from .database import SessionLocal
from .errors import register_error_handlers
from .monitoring.prometheus_metrics import prometheus_metrics
from .routes.v1 import (
    admin_appointments as admin_appointments_v1,
    admin_availability as admin_availability_v1,
    appointments as appointments_v1,
    billing as billing_v1,
    emails as emails_v1,
    invoices as invoices_v1,
    stripe_webhooks as stripe_webhooks_v1,
    teams as teams_v1,
)

API_TITLE = f"{BRAND_NAME} API"
API_VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"{API_TITLE} starting up (environment: {settings.environment})")
    if settings.environment == "production" and not settings.stripe_secret_key.get_secret_value():
        logger.warning("Stripe secret key missing in production; invoice creation will fail")
    if not settings.teams_configured:
        logger.info("Microsoft Teams not configured; confirmations will not carry a meeting link")
    yield
    logger.info(f"{API_TITLE} shutting down")


def _unique_operation_id(route: APIRoute) -> str:
    methods = "_".join(sorted(m.lower() for m in route.methods or []))
    path = route.path_format.replace("/", "_").replace("{", "").replace("}", "").strip("_")
    return f"{methods}__{path}__{(route.name or 'operation').lower()}".strip("_")


app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
    generate_unique_id_function=_unique_operation_id,
)
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)

api = APIRouter(prefix="/api")

api.include_router(admin_appointments_v1.router, prefix="/admin/appointments")
api.include_router(admin_availability_v1.router, prefix="/admin/availability")
api.include_router(appointments_v1.router, prefix="/appointments")
api.include_router(invoices_v1.router, prefix="/invoices")
api.include_router(billing_v1.router, prefix="/billing")
api.include_router(teams_v1.router, prefix="/teams")
api.include_router(emails_v1.router, prefix="/emails")
# Stripe posts to the fixed /api/stripe-webhook path
api.include_router(stripe_webhooks_v1.router)

app.include_router(api)


def _database_ok() -> bool:
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as exc:
        logger.error(f"Health check database ping failed: {exc}")
        return False
    finally:
        db.close()


@app.get("/health")
def health_check(response: Response) -> Dict[str, str]:
    database = "ok" if _database_ok() else "unavailable"
    if database != "ok":
        response.status_code = 503
    return {
        "status": "healthy" if database == "ok" else "degraded",
        "service": f"{BRAND_NAME.lower().replace(' ', '-')}-api",
        "version": API_VERSION,
        "environment": settings.environment,
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


@app.get("/metrics", include_in_schema=False)
def metrics_endpoint() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
    )
