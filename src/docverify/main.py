"""
Main application entry point for the document verification poller.

This module sets up the FastAPI application, configures logging, and wires
the polling store, scheduler and API client into the application state.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .client import DocumentVerificationClient
from .config import settings
from .monitoring import MonitoringRouter
from .polling.lifecycle import PollingLifecycleManager
from .polling.scheduler import PollingScheduler
from .polling.store import PollingStateStore
from .service import DocumentVerificationService
from .state import KeyValueStoreFactory


def setup_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level), format="%(message)s"
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    logger = structlog.get_logger()

    logger.info("Starting document verification poller")
    logger.info(
        "Configuration loaded",
        api_base_url=settings.api_base_url,
        state_backend=settings.state_backend,
        polling=settings.polling_config.model_dump(),
        debug=settings.debug,
    )

    # Initialize services
    state_config = settings.state_config
    backend = KeyValueStoreFactory.create_store(
        state_config.backend, directory=state_config.directory
    )
    if not backend.health_check():
        logger.warning("Polling state backend unhealthy", backend=state_config.backend)

    store = PollingStateStore(backend)
    client = DocumentVerificationClient(
        settings.api_base_url, timeout=settings.request_timeout_seconds
    )
    scheduler = PollingScheduler(
        store, client.get_verification_status, settings.polling_config
    )

    # Store services in app state
    app.state.polling_store = store
    app.state.polling_scheduler = scheduler
    app.state.lifecycle_manager = PollingLifecycleManager(store)
    app.state.verification_client = client
    app.state.verification_service = DocumentVerificationService(client, scheduler)

    yield

    logger.info("Shutting down document verification poller")
    await scheduler.aclose()
    await client.aclose()


# Create FastAPI application
app = FastAPI(
    title="Document Verification Poller",
    description="Tracks asynchronous document verification jobs",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS
if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

# Include monitoring routes
monitoring_router = MonitoringRouter()
app.include_router(monitoring_router.router, prefix="/polling", tags=["polling"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "Document Verification Poller",
        "version": __version__,
        "status": "active",
    }


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


def main() -> None:
    """Main entry point."""
    import uvicorn

    setup_logging()
    logger = structlog.get_logger()

    logger.info(
        "Starting server", host=settings.host, port=settings.port, debug=settings.debug
    )

    uvicorn.run(
        "docverify.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,  # We handle logging ourselves
    )


if __name__ == "__main__":
    main()
