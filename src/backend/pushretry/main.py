"""Notification retry service FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pushretry.api import router as api_router
from pushretry.core.config import settings
from pushretry.core.deps import async_session_factory, engine
from pushretry.core.logging import configure_logging
from pushretry.services.delivery import PushGatewayDelivery, SqlSubscriptionResolver
from pushretry.services.retry import InMemoryRetryStore, NotificationRetryManager, SqlRetryStore

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown events."""
    configure_logging(settings.log_level, debug=settings.debug)

    # Startup
    logger.info("Starting notification retry service", environment=settings.environment)

    if settings.retry_persistence_enabled:
        if settings.database_auto_create:
            await SqlRetryStore.create_schema(engine)
        store = SqlRetryStore(async_session_factory)
    else:
        store = InMemoryRetryStore()

    subscriptions = SqlSubscriptionResolver(async_session_factory)
    deliver = PushGatewayDelivery.from_settings(
        settings,
        subscription_resolver=subscriptions,
        on_subscription_expired=subscriptions.deactivate,
    )
    retry_manager = NotificationRetryManager.from_settings(deliver, settings, store=store)
    await retry_manager.init()
    app.state.retry_manager = retry_manager

    yield

    # Shutdown
    logger.info("Shutting down notification retry service")

    try:
        await retry_manager.shutdown(persist=settings.retry_persistence_enabled)
    except Exception as e:
        logger.error("Failed to shut down retry manager cleanly", error=str(e))

    app.state.retry_manager = None
    await engine.dispose()


fastapi_app = FastAPI(
    title="Notification Retry API",
    description="Retry scheduling and circuit breaking for push notification delivery",
    version="0.1.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)

# Include API routes
fastapi_app.include_router(api_router, prefix="/api/v1")


@fastapi_app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    # Convert errors to JSON-serializable format
    errors = []
    for error in exc.errors():
        err = {
            "loc": error.get("loc"),
            "msg": str(error.get("msg")),
            "type": error.get("type"),
        }
        errors.append(err)

    logger.error("Validation error",
                 path=str(request.url.path),
                 errors=errors)
    return JSONResponse(
        status_code=422,
        content={"detail": errors}
    )


# Set up Prometheus metrics instrumentation
_instrumentator = None
if settings.metrics_enabled:
    from pushretry.core.metrics import setup_metrics, expose_metrics

    _instrumentator = setup_metrics(fastapi_app)
    expose_metrics(fastapi_app, _instrumentator)


@fastapi_app.get("/health")
async def health_check() -> dict:
    """Health check endpoint, includes the push gateway circuit state."""
    manager = getattr(fastapi_app.state, "retry_manager", None)
    if manager is None:
        return {"status": "starting", "version": "0.1.0"}
    return {
        "status": "healthy",
        "version": "0.1.0",
        "circuit_breaker_state": manager.breaker.status.value,
        "processor_running": manager.processor.is_running,
    }
