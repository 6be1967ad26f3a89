# backend/consultcore/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.routing import APIRoute

from . import __version__
from .core.config import settings
from .errors import register_error_handlers
from .payments.registry import supported_gateways
from .routes.v1 import bookings as bookings_v1
from .routes.v1 import health as health_v1
from .routes.v1 import internal as internal_v1
from .routes.v1 import payments as payments_v1
from .routes.v1 import prometheus as prometheus_v1
from .routes.v1 import webhooks as webhooks_v1

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    logger.info("Consultcore API starting up...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Payment gateways: {', '.join(supported_gateways())}")
    if not settings.cron_secret.get_secret_value():
        logger.warning("CRON_SECRET is not set; the internal sweep trigger is disabled")
    yield
    logger.info("Consultcore API shutting down...")


def _unique_operation_id(route: APIRoute) -> str:
    methods = "_".join(sorted(m.lower() for m in route.methods or []))
    path = route.path_format.replace("/", "_").replace("{", "").replace("}", "").strip("_")
    name = (route.name or "operation").lower().replace(" ", "_")
    return f"{methods}__{path}__{name}".strip("_")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Consultcore API",
        description="Booking lifecycle engine for paid consultation sessions",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
        generate_unique_id_function=_unique_operation_id,
    )
    # Register unified error envelope handlers
    register_error_handlers(app)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    api_v1.include_router(payments_v1.router, prefix="/payments")
    api_v1.include_router(webhooks_v1.router, prefix="/webhooks")
    api_v1.include_router(internal_v1.router, prefix="/internal")
    app.include_router(api_v1)

    # Unversioned: health checks and scrapers depend on fixed paths
    app.include_router(health_v1.router, prefix="/health")
    app.include_router(prometheus_v1.router, prefix="/metrics")
    return app


app = create_app()
