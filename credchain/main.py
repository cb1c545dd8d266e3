"""
Credchain - FastAPI Application
Document custody and verification for academic credentials.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from credchain import __version__
from credchain.core.config import Settings, get_settings
from credchain.core.errors import setup_exception_handlers
from credchain.core.logging_config import setup_logging
from credchain.core.logging_middleware import RequestLoggingMiddleware
from credchain.core.timeout import TimeoutMiddleware
from credchain.routers import documents, health
from credchain.services.custody import CustodyServices, build_services

logger = logging.getLogger(__name__)

REGISTRATION_GRACE_S = 10.0


def create_app(settings: Optional[Settings] = None, services: Optional[CustodyServices] = None) -> FastAPI:
    """
    Build the application.

    With ``services`` given the caller owns their startup and shutdown;
    otherwise the lifespan builds them from ``settings`` and starts the
    queue worker.
    """
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return

        setup_logging(settings.log_level, settings.log_json, settings.log_file)
        owned = build_services(settings)
        await owned.startup()
        app.state.services = owned
        logger.info(
            "Credchain started",
            extra={
                "providers": [p.provider_name for p in owned.custody.router.remote_providers],
                "ledger": owned.custody.ledger.configured,
            },
        )
        try:
            yield
        finally:
            await owned.shutdown()
            logger.info("Credchain stopped")

    app = FastAPI(
        title="Credchain",
        description="Document custody and verification core for academic credentials",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    setup_exception_handlers(app)
    # Registration gets its own budget plus a grace period to record the outcome
    app.add_middleware(
        TimeoutMiddleware,
        timeout=settings.request_timeout_s,
        extended={"/api/documents/register": settings.registration_timeout_s + REGISTRATION_GRACE_S},
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, tags=["Health"])
    app.include_router(documents.router, prefix="/api/documents", tags=["Documents"])
    return app
