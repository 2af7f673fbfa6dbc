import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from staffverify.config import settings
from staffverify.core.async_tasks import drain_background_tasks
from staffverify.core.log_config import configure_logging
from staffverify.database import init_db
from staffverify.models import *  # noqa: F403

APP_VERSION = "0.1.0"
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: create tables and subscribe the enrichment worker to upload events
    await init_db()
    from staffverify.database import async_session
    from staffverify.services.storage_event_processor import get_processor
    from staffverify.services.storage_service import get_event_dispatcher, get_storage

    dispatcher = get_event_dispatcher()
    processor = get_processor()
    if dispatcher.subscriber_count == 0:
        processor.register(dispatcher)
    logger.info(
        "Storage event processor subscribed to '%s' (matcher=%s)",
        processor.verification_prefix, processor.matcher_strategy,
    )

    async def _reconciliation_loop() -> None:
        await asyncio.sleep(60)  # Let startup traffic settle first
        while True:
            try:
                from staffverify.services.reconciliation_service import ReconciliationService

                async with async_session() as db:
                    service = ReconciliationService(db, get_storage())
                    await service.reconcile(repair=True)
                    await service.find_orphaned_uploads()
            except Exception:
                logger.exception("Background task error")
            await asyncio.sleep(settings.reconciliation_interval_seconds)

    reconciliation_task = None
    if settings.reconciliation_enabled:
        reconciliation_task = asyncio.create_task(_reconciliation_loop())

    yield

    # Shutdown: let in-flight enrichment finish, stop loops, dispose connection pool
    if reconciliation_task is not None:
        reconciliation_task.cancel()
    await drain_background_tasks(timeout_seconds=10.0)
    dispatcher.clear()

    from staffverify.database import dispose_engine

    await dispose_engine()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:"
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=(), usb=()"
        )
        return response


def create_app() -> FastAPI:
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Staff Verification Service",
        description="Employment verification for retail staff: submission, photo enrichment and admin review",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    # CORS configurable via CORS_ORIGINS env var
    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Security headers
    app.add_middleware(SecurityHeadersMiddleware)

    # Register REST routers
    from staffverify.api import API_PREFIX, API_ROUTERS

    for router in API_ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "name": "Staff Verification Service",
            "version": APP_VERSION,
            "docs": "/docs",
            "health": f"{API_PREFIX}/health",
        }

    return app


app = create_app()
