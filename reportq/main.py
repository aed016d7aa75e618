from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reportq.config.logging import get_logger, setup_logging
from reportq.config.settings import Settings, get_settings
from reportq.infra.broker import RabbitMQBroker
from reportq.infra.database import Database
from reportq.v1.core.exceptions import (
    ReportQueueException,
    RequestContextMiddleware,
    general_exception_handler,
    report_queue_exception_handler,
)
from reportq.v1.core.registries import payload_validator_registry, work_handler_registry
from reportq.v1.healthz import router as health_router
from reportq.v1.jobs import registry_init  # noqa: F401
from reportq.v1.jobs.routes import router as jobs_router
from reportq.v1.jobs.service import JobService
from reportq.v1.jobs.store import SqlStatusStore

logger = get_logger(__name__)


def build_lifespan(settings: Settings):
    """Lifespan that owns the database and broker clients for the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        database = Database(settings)
        if settings.database_auto_create:
            await database.create_schema()

        broker = RabbitMQBroker.from_settings(settings)
        await broker.connect()

        app.state.database = database
        app.state.broker = broker
        app.state.job_service = JobService(settings, SqlStatusStore(database), broker)
        logger.info("Application started", environment=settings.environment)

        try:
            yield
        finally:
            await broker.close()
            await database.close()
            logger.info("Application stopped")

    return lifespan


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    # Initialize structured logging
    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Asynchronous report generation queue",
        version=settings.version,
        debug=settings.debug,
        lifespan=build_lifespan(settings),
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(ReportQueueException, report_queue_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        payload_validator_registry.freeze()
        work_handler_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "reportq.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
