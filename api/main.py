"""Connector Engine API: FastAPI entry point.

Registers middleware, routers, error handling and lifecycle hooks. The
engine itself (ConnectorServices) is built at startup unless a test
injects one through create_app(services=...).
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.middleware import ActorMiddleware
from api.routers.connectors import router as connectors_router
from api.routers.integrations import router as integrations_router
from api.routers.webhooks import router as webhooks_router
from core.config import ConnectorSettings
from core.integrations.errors import ConnectorError
from core.integrations.services import ConnectorServices

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:3001"
).split(",")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DB_AUTO_CREATE = os.getenv("DB_AUTO_CREATE", "false").lower() == "true"
SCHEDULER_ENABLED = os.getenv("SYNC_SCHEDULER_ENABLED", "true").lower() == "true"
VERSION = "0.1.0"

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

def _lifespan(injected: ConnectorServices | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the engine (unless injected), start the scheduler, tear down."""
        services = injected
        owned = services is None
        if owned:
            settings = ConnectorSettings.from_env()
            if settings.store_backend == "sql" and DB_AUTO_CREATE:
                from core.database import init_db

                await init_db()
            services = ConnectorServices.build(settings)
            app.state.services = services
            if SCHEDULER_ENABLED:
                services.scheduler.start()

        logger.info("[api] Connector Engine API started")
        yield
        logger.info("[api] Connector Engine API shutting down")

        if owned:
            await services.scheduler.shutdown()
            if services.settings.store_backend == "sql":
                from core.database import close_db

                await close_db()
        else:
            await services.sync_worker.drain()

    return lifespan


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[api] {request.method} {request.url.path} failed: {exc}")
    return JSONResponse({"detail": str(exc), "code": exc.code}, status_code=exc.status_code)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def create_app(services: ConnectorServices | None = None) -> FastAPI:
    app = FastAPI(
        title="Connector Engine",
        description="Multi-tenant connector integrations, webhook ingestion and sync",
        version=VERSION,
        lifespan=_lifespan(services),
    )
    if services is not None:
        app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Tenant / user / role context
    app.add_middleware(ActorMiddleware)

    app.add_exception_handler(ConnectorError, connector_error_handler)

    app.include_router(connectors_router, prefix="/api", tags=["Connectors"])
    app.include_router(integrations_router, prefix="/api", tags=["Integrations"])
    app.include_router(webhooks_router, prefix="/api", tags=["Webhooks"])

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": VERSION}

    @app.get("/")
    async def root():
        return {
            "name": "Connector Engine",
            "version": VERSION,
            "docs": "/docs",
            "connectors": [d.id for d in app.state.services.registry.list_active()],
        }

    return app


app = create_app()
