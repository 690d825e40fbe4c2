from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from perkhub_api.core.settings import settings
from .api.routes import api_router
from .core.logging import configure_logging
from .services.cache import ReadThroughCache
from .services.establishments import EstablishmentListingService


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "PerkHub API starting",
        environment=settings.environment,
        stripe_configured=bool(settings.stripe_secret_key),
        admin_key_required=bool(settings.admin_api_key),
    )
    try:
        yield
    finally:
        logger.info("PerkHub API stopped")


def create_app() -> FastAPI:
    """Application factory for the PerkHub FastAPI service."""
    configure_logging(
        service_name="perkhub-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="PerkHub API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.establishment_listing = EstablishmentListingService(ReadThroughCache())

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
