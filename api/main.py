"""
api/main.py -- FastAPI application entry point for Gatekeeper.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- OAuth state storage for the redirect flow

Lifespan builds the auth core (store engine, key ring, role seed, OAuth
registry) and starts the hourly revocation-ledger sweep; shutdown cancels the
sweep and disposes the engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.devices import router as devices_router
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.roles import router as roles_router
from auth.container import AuthComponents, build_components
from auth.errors import AuthError, StoreUnavailable
from auth.oauth import build_oauth
from auth.sessions import seconds_until_next_sweep
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatekeeper.api")

# ---------------------------------------------------------------------------
# Background ledger sweep
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired ledger entries and token records hourly at a fixed offset.

    The purge runs in a worker thread so the delete never blocks the event
    loop. A failed sweep is logged and retried at the next slot; the loop only
    ends when the task is cancelled during shutdown.
    """
    offset = get_settings().ledger_purge_offset_minutes
    while True:
        await asyncio.sleep(seconds_until_next_sweep(datetime.now(timezone.utc), offset))
        auth: AuthComponents = app.state.auth
        try:
            await asyncio.to_thread(auth.sessions.purge_expired)
        except Exception:
            logger.exception("Ledger sweep failed; retrying at the next slot")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth core on startup and tear it down on shutdown.

    Startup order matters:
      1. Components first -- creates tables, loads signing keys.
      2. Role seed second -- signup assigns the default role, which must exist.
      3. Sweep task last -- references app.state.auth.
    """
    settings = get_settings()
    logger.info("Gatekeeper API starting up")
    app.state.auth = build_components(settings)
    seeded = app.state.auth.roles.ensure_default_roles()
    app.state.oauth = build_oauth(settings)
    logger.info(
        "Auth initialized (algorithm=%s, kid=%s, roles_seeded=%d)",
        settings.jwt_algorithm,
        app.state.auth.keyring.snapshot().active.kid,
        seeded,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.auth.engine.dispose()
    logger.info("Gatekeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatekeeper API",
    description="Bearer credentials, revocation, roles, sessions and external sign-in.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Device-ID",
        "X-Device-Name",
        "X-Device-Model",
        "X-OS-Name",
        "X-OS-Version",
        "X-App-Version",
        "X-Location",
    ],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state value in the session between the authorize
# redirect and the callback.
app.add_middleware(SessionMiddleware, secret_key=get_settings().secret_key)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth"])
app.include_router(devices_router, prefix="/api/v1", tags=["Devices"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate auth core failures into the envelope.

    401 responses carry WWW-Authenticate: Bearer so clients know to
    re-authenticate rather than retry.
    """
    response = _error_response(exc.status_code, exc.code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(OperationalError)
@app.exception_handler(PoolTimeoutError)
async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Store timeouts and refused connections surface as a transient 503."""
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    err = StoreUnavailable()
    response = _error_response(err.status_code, err.code, err.message)
    response.headers["Retry-After"] = "5"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405, ...)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged, never returned: stack traces in a response
    body leak implementation details.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


def _database_status(auth: AuthComponents) -> str:
    try:
        with auth.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except (OperationalError, PoolTimeoutError):
        logger.warning("Health check: database unreachable")
        return "unavailable"
    return "ok"


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version, and store reachability."""
    components = {"app": "ok", "database": _database_status(request.app.state.auth)}
    healthy = all(v == "ok" for v in components.values())
    body = HealthResponse(status="healthy" if healthy else "degraded", version=VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
