from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request

from meterbill.apps.api.errors import register_exception_handlers
from meterbill.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from meterbill.apps.api.routes.admin_billing import router as admin_billing_router
from meterbill.apps.api.routes.admin_catalog import router as admin_catalog_router
from meterbill.apps.api.routes.admin_identity import router as admin_identity_router
from meterbill.apps.api.routes.discovery import router as discovery_router
from meterbill.apps.api.routes.entitlements import router as entitlements_router
from meterbill.apps.api.routes.health import router as health_router
from meterbill.apps.api.routes.ledger import router as ledger_router
from meterbill.apps.api.routes.usage import router as usage_router
from meterbill.apps.api.routes.webhooks import router as webhooks_router
from meterbill.core.config import Settings, get_settings
from meterbill.core.logging import configure_logging
from meterbill.persistence.db import Database


logger = logging.getLogger(__name__)


def create_app(database: Database | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the API; an injected database is used as-is and left open on shutdown."""
    configure_logging()
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned: Database | None = None
        if getattr(app.state, "database", None) is None:
            owned = Database.from_settings(settings)
            app.state.database = owned
        try:
            yield
        finally:
            if owned is not None:
                await owned.dispose()
                app.state.database = None

    app = FastAPI(title="Meterbill API", version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Non-blank inbound ids are kept; the same id goes to the error envelope and the header.
        request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip() or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_complete method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    register_exception_handlers(app)

    # Client-facing surface (bearer tokens or public discovery).
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(discovery_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    app.include_router(entitlements_router, prefix=f"/{API_VERSION}")
    app.include_router(ledger_router, prefix=f"/{API_VERSION}")
    # Admin surface guarded by the shared admin API key.
    app.include_router(admin_identity_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_catalog_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_billing_router, prefix=f"/{API_VERSION}")
    # Payment processor callbacks authenticate by signature, not by token.
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
