"""
AlertRelay - notification rule and webhook delivery engine

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

# Import observability modules
from alertrelay.config import settings
from alertrelay.logging_config import configure_logging
from alertrelay.sentry_config import configure_sentry
from alertrelay.middleware.logging import LoggingMiddleware
from alertrelay.routes.metrics import router as metrics_router

from alertrelay.engine import build_engine, set_engine
from alertrelay.exceptions import ConfigurationError, ConflictError, NotFoundError

# Import route modules
from alertrelay.routes.events import router as events_router
from alertrelay.routes.rules import router as rules_router
from alertrelay.routes.channels import router as channels_router
from alertrelay.routes.webhooks import router as webhooks_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine, start the delivery queue, and shut both down on exit."""
    engine = build_engine(settings)
    set_engine(engine)
    await engine.start()
    try:
        yield
    finally:
        await engine.stop()
        set_engine(None)


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Event-driven notification rules with signed, retried webhook delivery",
        lifespan=lifespan_handler,
    )

    # Add logging middleware FIRST (runs before other middleware)
    app.add_middleware(LoggingMiddleware)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    # Include metrics endpoint FIRST (so it's always available)
    app.include_router(metrics_router)

    app.include_router(events_router)
    app.include_router(rules_router)
    app.include_router(channels_router)
    app.include_router(webhooks_router)

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "delivery_backend": settings.DELIVERY_BACKEND,
            "ephemeral_backend": settings.EPHEMERAL_BACKEND,
        }

    return app


app = create_app()
