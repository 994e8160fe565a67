"""
api/main.py -- FastAPI application entry point for Keyturn.

Exposes the auth core (auth/service.py) over HTTP. The app is a thin boundary:
it parses bodies, moves tokens in and out of cookies, and maps the core's
error taxonomy onto status codes. No auth rule lives here.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware  -- credentials-enabled CORS for the configured web origins
  2. log_requests    -- method, path, status, latency for every request

Lifespan builds the single AuthConfig from Settings (fail-fast on missing
secrets), opens the user store, wires the AuthService into app.state, and
closes the store on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, InvalidInputError, UnauthorizedError
from auth.service import build_auth_service
from auth.store import UserStore
from core.config import AuthConfig, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyturn.api")

# Settings are resolved at import time so a missing JWT secret stops the
# process before it binds a port [M7].
_settings = get_settings()

# Status code per AuthError.code. Unknown codes fall through to 400.
_STATUS_BY_CODE: dict[str, int] = {
    "invalid_input": 422,
    "conflict": 409,
    "not_found": 404,
    "unauthorized": 401,
    "store_failure": 503,
}

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and wire the AuthService; close the store on shutdown."""
    logger.info("Keyturn API starting up")
    config = AuthConfig.from_settings(_settings)
    app.state.settings = _settings
    app.state.user_store = UserStore(_settings.database_url)
    app.state.auth_service = build_auth_service(config, app.state.user_store)
    logger.info(
        "Auth initialized (access ttl=%s, refresh ttl=%s, bcrypt rounds=%d)",
        config.access.expires_in,
        config.refresh.expires_in,
        config.bcrypt_rounds,
    )

    yield

    app.state.user_store.close()
    logger.info("Keyturn API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Keyturn API",
    description="Email/password authentication with rotating refresh tokens.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the core's failure taxonomy onto HTTP.

    UnauthorizedError: one generic message for every internal reason, so the
    response never reveals whether the email exists or why a token failed.
    """
    status_code = _STATUS_BY_CODE.get(exc.code, 400)
    if isinstance(exc, UnauthorizedError):
        resp = _error(status_code, exc.code, "Invalid or expired credentials.")
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    if isinstance(exc, InvalidInputError):
        return _error(status_code, exc.code, exc.message, detail=exc.field)
    if exc.code == "store_failure":
        return _error(status_code, exc.code, "Service temporarily unavailable. Please retry.")
    return _error(status_code, exc.code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    db_ok = request.app.state.user_store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
