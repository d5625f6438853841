import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from relay.settings import Settings, settings as default_settings
from relay.api.v1.jobs import router as jobs_router
from relay.api.v1.admin import router as admin_router
from relay.api.v1.auth import router as auth_router
from relay.api.v1.metrics import router as metrics_router
from relay.auth.handshake import HandshakeBridge
from relay.auth.providers import OAuthProvider, build_providers
from relay.auth.sessions import HandshakeSessionStore, InMemorySessionStore
from relay.auth.tokens import CredentialManager
from relay.db.session import Store
from relay.domain.errors import StorageError
from relay.domain.states import Platform
from relay.services.queue import JobQueue

logger = logging.getLogger("uvicorn")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sessions: Optional[HandshakeSessionStore] = None,
    providers: Optional[dict[Platform, OAuthProvider]] = None,
) -> FastAPI:
    """
    Builds the queue API and OAuth callback server.

    The dispatch loop is not started here; it runs as its own process
    (`relay scheduler`) and meets this one only in the database.
    """
    settings = settings or default_settings
    owns_store = store is None
    owns_client = http_client is None

    store = store or Store(settings.SQLALCHEMY_DATABASE_URI)
    http_client = http_client or httpx.AsyncClient(timeout=settings.OAUTH_HTTP_TIMEOUT_SECONDS)
    config = settings.engine_config()

    credentials = CredentialManager(store, config)
    handshake = HandshakeBridge(
        providers=providers or build_providers(settings),
        sessions=sessions if sessions is not None else InMemorySessionStore(),
        credentials=credentials,
        http_client=http_client,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await store.create_all()
        configured = [p.platform.value for p in handshake.providers.values() if p.configured]
        logger.info(f"OAuth providers configured: {', '.join(configured) or 'none'}")

        yield

        # Shutdown
        if owns_client:
            await http_client.aclose()
        if owns_store:
            await store.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    app.state.store = store
    app.state.queue = JobQueue(store, config)
    app.state.credentials = credentials
    app.state.handshake = handshake

    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
    app.include_router(auth_router, prefix="/auth", tags=["auth"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage error on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
