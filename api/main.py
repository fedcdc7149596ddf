"""
api/main.py -- FastAPI application entry point for CrowdControl.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests           -- one log line per request with status and latency
  2. token_filter           -- verifies the bearer token on every /api/v1/ path
                               and answers 401 before routing when it is absent
                               or invalid
  3. SlowAPIMiddleware      -- enforces per-route rate limits from api.limiter
  4. CORSMiddleware         -- adds CORS headers for allowed browser origins
  5. TrustedHostMiddleware  -- rejects requests with unexpected Host headers

Lifespan opens the TrustStore, wires the services onto app.state and starts
the notification dispatcher; shutdown drains the dispatcher and closes the
store.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as account_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.accounts import AccountService
from auth.authenticator import Authenticator
from auth.codes import VerificationCodeManager
from auth.dependencies import bearer_token
from auth.errors import TokenError, TokenMalformed, TrustError
from auth.locks import LockGuard
from auth.roles import RoleCapacityEnforcer
from auth.store import TrustStore
from auth.tokens import TokenService, get_token_service
from core.config import Settings, get_settings
from notify.dispatcher import LogNotifier, NotificationDispatcher, Notifier

API_VERSION = "0.1.0"

# Every path under this prefix needs a valid bearer token.
_PROTECTED_PREFIX = "/api/v1/"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("crowdcontrol.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_state(
    app: FastAPI,
    store: TrustStore,
    notifier: Notifier,
    config: Settings,
    tokens: TokenService | None = None,
) -> None:
    """Build every service over store and attach it to app.state.

    Routes and dependencies only ever read services from app.state, so tests
    can call this with their own store, notifier and clock-controlled
    TokenService.
    """
    tokens = tokens or get_token_service()
    locks = LockGuard(store, lockout_threshold=config.lockout_threshold)
    roles = RoleCapacityEnforcer(store)
    app.state.store = store
    app.state.tokens = tokens
    app.state.locks = locks
    app.state.roles = roles
    app.state.codes = VerificationCodeManager(store)
    app.state.accounts = AccountService(store, roles, locks)
    app.state.authenticator = Authenticator(store, tokens, locks)
    app.state.dispatcher = NotificationDispatcher(
        notifier, workers=config.notification_workers, backlog=config.notification_backlog
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and services on startup; drain and close on shutdown."""
    logger.info("CrowdControl API starting up")
    store = TrustStore(settings.database_url)
    configure_state(app, store, LogNotifier(), settings)
    logger.info("Trust store initialized (lockout_threshold=%d)", settings.lockout_threshold)

    yield

    app.state.dispatcher.close()
    store.close()
    logger.info("CrowdControl API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CrowdControl API",
    description="Account trust management: session tokens, activation and recovery codes, roles and locks.",
    version=API_VERSION,
    lifespan=lifespan,
    # Schema browsing is a development convenience only.
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() / @app.middleware call wraps everything registered
# before it, so the last one registered sees the request first.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


def _error_json(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# Token filter
#
# Runs before routing. Exceptions raised inside @app.middleware bypass the
# exception handlers below, so failures are rendered here directly.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def token_filter(request: Request, call_next):
    """Reject protected requests without a valid bearer token (401).

    The body is the same envelope every other error uses,
    {"error": {"code": <ErrorKind value>, "message": ..., "detail": null}},
    not a bare {"message": ...}; clients read error.message.

    On success the raw token and its verified claims are stored on
    request.state for auth.dependencies.get_auth_context().
    """
    if request.url.path.startswith(_PROTECTED_PREFIX) and request.method != "OPTIONS":
        token = bearer_token(request)
        try:
            if token is None:
                raise TokenMalformed("Authentication required.")
            claims = request.app.state.tokens.verify(token)
        except TokenError as exc:
            logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.kind.value)
            return _error_json(exc.status_code, exc.kind.value, exc.message)
        request.state.token = token
        request.state.token_claims = claims
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
# ---------------------------------------------------------------------------


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

app.include_router(account_router, tags=["Account"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(TrustError)
async def trust_error_handler(request: Request, exc: TrustError) -> JSONResponse:
    """Render any expected account-trust failure as {error: {code, message}}."""
    return _error_json(exc.status_code, exc.kind.value, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    slowapi stores this on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_json(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with structured error when request body or query params fail validation."""
    return _error_json(400, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_json(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_json(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit and no token --
# load balancers and monitoring systems must reach it.
# ---------------------------------------------------------------------------


@app.get("/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version and whether the database answers."""
    try:
        db_ok = request.app.state.store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unavailable")
        db_ok = False
    body = HealthResponse(
        status="ok" if db_ok else "degraded",
        version=API_VERSION,
        database="ok" if db_ok else "unavailable",
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
