"""
api/main.py -- FastAPI application factory for Gatehouse.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost; Starlette wraps the last-registered
middleware outermost):
  1. log_requests       -- method, path, status, latency
  2. identity           -- verifies a presented token into request.state
  3. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter
  4. CORSMiddleware     -- adds CORS headers for allowed browser origins

Every route under /api/v1/auth is declared through a SecuredRouter; its
permission expressions are copied into one RouteRegistry per app, which is
frozen before the app serves traffic. The guard dependency on each route
consults that registry.

Lifespan: startup builds the store, runs the schema bootstrap (audit,
rebuild, seed) to completion, then wires the guard and token issuer.
A bootstrap failure aborts startup. Shutdown disposes the engine.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.applications import router as applications_router
from api.routes.v1.clients import router as clients_router
from api.routes.v1.resources import router as resources_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.tokens import router as tokens_router
from api.routes.v1.users import router as users_router
from auth.bootstrap import SchemaBootstrap
from auth.dependencies import decode_identity
from auth.errors import AuthError
from auth.grants import TokenIssuer
from auth.guard import PermissionGuard
from auth.lockout import LoginAttemptTracker
from auth.registry import RouteRegistry
from auth.store import IdentityStore
from core.config import Settings, get_settings

__version__ = "0.1.0"

API_PREFIX = "/api/v1"

SECURED_ROUTERS = (
    tokens_router,
    users_router,
    clients_router,
    roles_router,
    resources_router,
    applications_router,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the engine's collaborators and bootstrap the schema.

    Startup order matters:
      1. Store -- engine only; the store does not create tables.
      2. Bootstrap -- audit/rebuild/seed must finish before any guarded
         route accepts traffic.
      3. Guard and issuer -- both read the now-consistent store.
    """
    settings: Settings = app.state.settings
    store: IdentityStore = app.state.store or IdentityStore(settings.database_url)
    app.state.store = store
    logger.info("Gatehouse starting up")

    bootstrap = SchemaBootstrap(
        store.engine,
        crypto_secret=settings.crypto_secret,
        extra_resources=settings.extra_resources,
        main_application_name=settings.main_application_name,
        client_id_suffix=settings.client_id_suffix,
        credentials_path=settings.credentials_file,
        reseed_when_no_admin=settings.reseed_when_no_admin,
    )
    app.state.bootstrap_result = bootstrap.run()
    logger.info(
        "Bootstrap finished (rebuilt=%s, seeded=%s)",
        app.state.bootstrap_result.rebuilt,
        app.state.bootstrap_result.seeded,
    )

    app.state.guard = PermissionGuard(app.state.registry, store)
    app.state.issuer = TokenIssuer(
        store,
        jwt_secret=settings.secret_key,
        crypto_secret=settings.crypto_secret,
        expire_seconds=settings.token_expire_seconds,
        tracker=LoginAttemptTracker(
            settings.max_failed_login_attempts,
            settings.lockout_cooldown_minutes,
            settings.lockout_window_minutes,
        ),
        client_id_suffix=settings.client_id_suffix,
    )

    yield

    store.close()
    logger.info("Gatehouse shutdown complete")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any engine error. original_error goes to the log, never the body."""
    if exc.original_error is not None:
        logger.error(
            "%s on %s %s caused by %r", exc.__class__.__name__, request.method, request.url.path, exc.original_error
        )
    elif exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.code, exc.message)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, 429000, "Too many requests.")
    response.headers["Retry-After"] = str(retry_after)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with the invalid-request code when body or query params fail validation."""
    fields = ", ".join(".".join(str(part) for part in err.get("loc", ())) for err in exc.errors())
    return _error(422, 400001, f"Request validation failed: {fields}" if fields else "Request validation failed.")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405 methods)."""
    return _error(exc.status_code, exc.status_code * 1000, str(exc.detail))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, 500000, "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, store: IdentityStore | None = None) -> FastAPI:
    """Build a Gatehouse app.

    settings defaults to get_settings(); store defaults to an IdentityStore on
    settings.database_url, created in the lifespan.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Gatehouse API",
        description="Role-based authorization and identity engine.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store

    # -- Middleware: the last one registered is the first a request meets.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.add_middleware(SlowAPIMiddleware)
    # SlowAPI looks for app.state.limiter by convention.
    app.state.limiter = limiter

    @app.middleware("http")
    async def identity(request: Request, call_next):
        decode_identity(request, settings.secret_key)
        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    # -- Routers and the permission registry
    registry = RouteRegistry()
    for secured in SECURED_ROUTERS:
        secured.register_into(registry, API_PREFIX)
        app.include_router(secured.router, prefix=API_PREFIX)
    registry.freeze()
    app.state.registry = registry

    # -- Exception handlers
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # -- Health: outside the guard so load balancers need no token.
    @app.get("/api/v1/health", tags=["Health"])
    def health(request: Request) -> HealthResponse:
        """Return API liveness, version and database reachability."""
        try:
            database = "ok" if request.app.state.store.ping() else "error"
        except Exception:
            logger.exception("Health check: database ping failed")
            database = "error"
        status = "healthy" if database == "ok" else "degraded"
        return HealthResponse(status=status, version=__version__, components={"app": "ok", "database": database})

    return app
