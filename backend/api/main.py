"""FastAPI application entry point."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from backend.api.config import Settings
from backend.api.dependencies import build_services
from backend.api.routers import offline, sharing, tracking
from bustrack.sharing import ShareCreationError
from bustrack.storage import JsonFileStore, KeyValueStore, MemoryStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the store and managers on startup, release them on shutdown."""
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)

    engine = None
    store: KeyValueStore
    if settings.storage_backend == "database":
        from backend.api.db.database import create_engine_for, create_session_factory
        from backend.api.services.db_kv_store import SqlKeyValueStore

        engine = create_engine_for(settings)
        store = SqlKeyValueStore(create_session_factory(engine))
    elif settings.storage_backend == "file":
        store = JsonFileStore(settings.storage_path)
    else:
        store = MemoryStore()
    logger.info("Using %s key-value store", settings.storage_backend)

    services = build_services(settings, store)
    app.state.services = services

    # Expired shares are only removed on access; sweep once at startup
    n_active = await services.shares.cleanup_expired()
    logger.info("%d active share(s) after startup sweep", n_active)

    yield

    services.offline.detach()
    if engine is not None:
        await engine.dispose()


load_dotenv()  # Populate os.environ from .env before reading settings
settings = Settings()

app = FastAPI(
    title="Bustrack API",
    description="Bus location sharing and offline-tolerant tracking",
    version="0.1.0",
    lifespan=lifespan,
    redirect_slashes=False,
)


# -- Cache-Control middleware --------------------------------------------------

# Route prefix -> Cache-Control header value
_CACHE_RULES: list[tuple[str, str]] = [
    # Share links resolve to live, revocable data
    ("/track/", "no-store"),
    ("/api/sharing", "no-store"),
    # Tracking views change with every fix
    ("/api/tracking", "no-cache"),
    ("/api/offline", "no-cache"),
]


class CacheControlMiddleware(BaseHTTPMiddleware):
    """Set Cache-Control headers based on the request path and method."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)

        # Only apply to successful GET responses without an existing header
        if request.method != "GET" or response.status_code >= 400:
            return response
        if "cache-control" in response.headers:
            return response

        path = request.url.path
        for prefix, value in _CACHE_RULES:
            if path.startswith(prefix):
                response.headers["Cache-Control"] = value
                break
        else:
            response.headers["Cache-Control"] = "no-cache"

        return response


# -- Exception handlers --------------------------------------------------------


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unhandled exceptions.

    Logs the full traceback server-side but returns a safe generic message
    to the client (no internal details leaked).
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.exception_handler(ShareCreationError)
async def share_creation_error_handler(request: Request, exc: ShareCreationError) -> JSONResponse:
    """Storage failed while creating a share; tell the user it did not happen."""
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Return 422 for ValueError (bad input data that passed validation)."""
    logger.warning("ValueError on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc)},
    )


# -- Middleware (order matters: last added = first executed) ------------------

app.add_middleware(CacheControlMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -- Routers -----------------------------------------------------------------

app.include_router(sharing.router, prefix="/api/sharing", tags=["sharing"])
app.include_router(sharing.links_router, prefix="/track", tags=["sharing"])
app.include_router(offline.router, prefix="/api/offline", tags=["offline"])
app.include_router(tracking.router, prefix="/api/tracking", tags=["tracking"])


# -- Health ------------------------------------------------------------------


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Return a simple health-check response."""
    return {"status": "ok"}
