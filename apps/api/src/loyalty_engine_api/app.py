from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from loyalty_engine_api.core.settings import settings
from loyalty_engine_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.loyalty import OrderProcessingCache
from .services.webhooks import OrderWebhookProcessor, WebhookEventRouter
from .workers import RewardExpiryWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    expiry_worker = RewardExpiryWorker(
        session_factory=_session_factory,
        interval_seconds=settings.reward_expiry_interval_seconds,
    )
    app.state.reward_expiry_worker = expiry_worker

    expiry_enabled = settings.reward_expiry_worker_enabled
    if expiry_enabled:
        expiry_worker.start()
        logger.info(
            "Reward expiry worker enabled",
            interval_seconds=expiry_worker.interval_seconds,
        )
    else:
        logger.info(
            "Reward expiry worker disabled",
            reason="reward_expiry_worker_enabled is false",
        )

    try:
        yield
    finally:
        if expiry_enabled and expiry_worker.is_running:
            await expiry_worker.stop()
        app.state.order_cache.clear()


def create_app() -> FastAPI:
    """Application factory for the loyalty engine FastAPI service."""
    configure_logging(
        service_name="loyalty-engine-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Loyalty Engine API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="loyalty-engine-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    order_cache = OrderProcessingCache(
        ttl_seconds=settings.order_processing_cache_ttl_seconds,
        max_entries=settings.order_processing_cache_max_entries,
    )
    app.state.order_cache = order_cache
    app.state.webhook_router = WebhookEventRouter(
        _session_factory,
        OrderWebhookProcessor(_session_factory, order_cache),
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
