# backend/studybuddy/main.py
"""
StudyBuddy booking & settlement API.

Run with ``uvicorn studybuddy.main:app``.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI

from .core.config import is_running_tests, settings
from .errors import register_error_handlers
from .middleware.prometheus_middleware import PrometheusMiddleware
from .routes import health, prometheus
from .routes.v1 import availability as availability_v1, payments as payments_v1, sessions as sessions_v1

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_TITLE = "StudyBuddy API"
API_VERSION = "1.0.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown without deprecated events."""
    logger.info(f"{API_TITLE} starting up...")
    logger.info(f"Environment: {settings.environment}")
    if is_running_tests():
        logger.info("Running under pytest (test mode active)")
    if not settings.stripe_secret_key.get_secret_value():
        logger.warning("STRIPE_SECRET_KEY is not set; payment calls will fail")
    if not settings.zoom_configured:
        logger.info("Zoom credentials not configured; meeting teardown uses the fake client")

    yield

    logger.info(f"{API_TITLE} shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    # Register unified error envelope handlers
    register_error_handlers(app)

    app.add_middleware(PrometheusMiddleware)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(sessions_v1.router, prefix="/sessions")
    api_v1.include_router(availability_v1.router, prefix="/tutors")
    api_v1.include_router(payments_v1.router, prefix="/payments")
    app.include_router(api_v1)

    # Infrastructure routes stay unversioned
    app.include_router(health.router)
    app.include_router(prometheus.router)
    return app


app = create_app()
