# backend/trafikskola/main.py
"""
FastAPI application.

``create_app`` wires routers, error handlers and the application-wide
collaborators kept on ``app.state``:

* ``gateway_settings``: cached Qliro settings read from ``site_settings``
* ``qliro_client_factory``: builds the gateway client (None = real httpx client)
* ``notification_sender``: outbound notification transport (None = log only)
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Dict

from fastapi import APIRouter, FastAPI

from . import __version__, models  # noqa: F401  (registers tables on Base.metadata)
from .core.config import settings
from .database import SessionLocal
from .errors import register_error_handlers
from .routes import prometheus
from .routes.v1 import bookings as bookings_v1, payments as payments_v1
from .services.gateway_settings import GatewaySettingsProvider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"Trafikskola API starting up (environment={settings.environment})")
    yield
    logger.info("Trafikskola API shutting down")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Trafikskola Booking API",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(app)

    app.state.gateway_settings = GatewaySettingsProvider.from_session_factory(
        SessionLocal, ttl_seconds=settings.gateway_settings_cache_ttl_seconds
    )
    app.state.qliro_client_factory = None
    app.state.notification_sender = None

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    api_v1.include_router(payments_v1.router, prefix="/payments")
    app.include_router(api_v1)
    app.include_router(prometheus.router)

    @app.get("/health", tags=["health"])
    def health() -> Dict[str, str]:
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()
