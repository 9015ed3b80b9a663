"""
api/main.py -- FastAPI application factory for the Gentle Space admin service.

create_app(settings) builds a fully wired application from one validated
Settings object. The object is stored on app.state.settings and handed to
every component that needs configuration; nothing reads the environment
after this point.

Run with:      uvicorn asgi:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SessionMiddleware     -- authlib keeps the OAuth state value here
  4. SlowAPIMiddleware     -- RATE_LIMIT per client IP, 429 envelope on excess
  5. cache_headers         -- Cache-Control for static assets and API GETs
  6. log_requests          -- one access log line per request

Lifespan handles startup (user store, OAuth registry, callback handler) and
shutdown (close DB engine) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import build_limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.callback import IdentityCallbackHandler
from auth.oauth import build_oauth
from auth.store import UserStore
from core.config import Settings, load_settings
from core.log import configure_logging

VERSION = "1.0.0"
STATIC_DIR = Path(__file__).resolve().parent.parent / "web" / "static"

logger = logging.getLogger("gentlespace.api")


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the callback handler wraps the user store, so the
    store must exist first.
    """
    settings: Settings = app.state.settings
    logger.info("Gentle Space admin service starting up (debug=%s)", settings.debug)
    app.state.user_store = UserStore(settings.database_url)
    app.state.oauth = build_oauth(settings)
    app.state.callback_handler = IdentityCallbackHandler(app.state.user_store, settings)
    logger.info(
        "Auth initialized (users=%d, google_enabled=%s)",
        app.state.user_store.count_users(),
        settings.google_enabled,
    )

    yield

    app.state.user_store.close()
    logger.info("Gentle Space admin service shutdown complete")


# ---------------------------------------------------------------------------
# Middleware functions
# ---------------------------------------------------------------------------


async def cache_headers(request: Request, call_next):
    """Apply the operational caching policy.

    /static/*            public, STATIC_CACHE_SECONDS (24h)
    successful GET /api  private, API_CACHE_SECONDS (5 min)

    Responses that already carry Cache-Control (login, logout, callback,
    health) keep their own value.
    """
    response = await call_next(request)
    if "cache-control" in response.headers:
        return response
    settings: Settings = request.app.state.settings
    path = request.url.path
    if path.startswith("/static/"):
        response.headers["Cache-Control"] = f"public, max-age={settings.static_cache_seconds}"
    elif path.startswith("/api/") and request.method == "GET" and 200 <= response.status_code < 300:
        response.headers["Cache-Control"] = f"private, max-age={settings.api_cache_seconds}"
    return response


async def log_requests(request: Request, call_next):
    """Log method, path, status and latency. Never logs query strings.

    The OAuth callback carries the authorization code in its query string.
    """
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
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After.

    Synchronous on purpose: SlowAPIMiddleware calls the registered handler
    directly, without awaiting it, when a default limit trips.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Database unreachable or failing: 503, generic message, details to the log only."""
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="backend_unavailable",
                message="The service is temporarily unavailable. Please try again.",
            )
        ).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application. settings defaults to load_settings()."""
    settings = settings or load_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Gentle Space Realty Admin",
        description="Admin sign-in for the Gentle Space Realty listing site.",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings
    limiter = build_limiter(settings)
    # SlowAPIMiddleware looks for app.state.limiter by convention.
    app.state.limiter = limiter

    # Registered innermost first: each add_middleware() call wraps the
    # stack built so far.
    app.middleware("http")(log_requests)
    app.middleware("http")(cache_headers)
    app.add_middleware(SlowAPIMiddleware)
    # authlib stores the OAuth state between the authorization redirect and
    # the callback in this session (CSRF protection for the code flow).
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.secret_key.get_secret_value(),
        session_cookie="gs_session",
        same_site="lax",
        https_only=settings.secure_cookies,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Health check: no auth, never rate limited, never cached.
    def health(request: Request) -> JSONResponse:
        """Return liveness, version, and database reachability."""
        try:
            request.app.state.user_store.ping()
            database = "ok"
        except SQLAlchemyError:
            logger.exception("Health check: database unreachable")
            database = "error"
        body = HealthResponse(version=VERSION, components={"app": "ok", "database": database})
        return JSONResponse(content=body.model_dump(), headers={"Cache-Control": "no-store"})

    app.add_api_route(
        "/api/v1/health",
        limiter.exempt(health),
        methods=["GET"],
        response_model=HealthResponse,
        tags=["Health"],
    )
    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    # Web UI router is mounted by asgi.py, not here.
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
    return app
