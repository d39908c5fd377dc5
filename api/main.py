"""
api/main.py -- FastAPI application entry point for TechPacker.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (database schema, cache, services, audit writer,
first-run admin) and shutdown (flush audit queue, close cache, dispose
engine) symmetrically. wire_app_state() / close_app_state() are the two
halves, exposed so tests can run them against their own engine, cache and
code dispatcher.

Every response, including every error, is the envelope built by
api.models.envelope().
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import HealthResponse, envelope
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.documents import router as documents_router
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.access import DocumentAccessService
from auth.admin import AdminService
from auth.dispatcher import CodeDispatcher, EmailCodeDispatcher
from auth.identity import IdentityResolver
from auth.models import Identity, SystemRole
from auth.service import AuthService
from auth.store import IdentityStore
from auth.tokens import hash_password
from auth.two_factor import TwoFactorEngine
from cache.store import Cache, create_cache
from core.config import Settings, get_settings
from core.database import create_engine
from core.errors import AppError
from documents.service import DocumentService
from documents.sharing import ShareService
from documents.store import DocumentStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("techpacker.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


async def wire_app_state(
    app: FastAPI,
    settings: Settings,
    engine: AsyncEngine,
    cache: Optional[Cache],
    dispatcher: CodeDispatcher,
) -> None:
    """Create stores, services and the audit writer and attach them to app.state.

    Order matters: stores before the services that hold them, and the audit
    trail started before any service can record into it.
    """
    identity_store = IdentityStore(engine, max_retries=settings.store_max_retries)
    document_store = DocumentStore(engine)
    audit_store = AuditStore(engine)
    for store in (identity_store, document_store, audit_store):
        await store.init()

    audit_trail = AuditTrail(audit_store, maxsize=settings.audit_queue_size)
    audit_trail.start()

    resolver = IdentityResolver(identity_store, cache, ttl_seconds=settings.cache_ttl_short)
    access = DocumentAccessService(document_store, cache, ttl_seconds=settings.cache_ttl_short)
    two_factor = TwoFactorEngine(
        identity_store,
        dispatcher,
        code_ttl_seconds=settings.two_factor_code_ttl_seconds,
        max_attempts=settings.two_factor_max_attempts,
    )
    share_service = ShareService(document_store, identity_store, access, resolver, audit_trail)

    app.state.engine = engine
    app.state.cache = cache
    app.state.identity_store = identity_store
    app.state.document_store = document_store
    app.state.audit_trail = audit_trail
    app.state.identity_resolver = resolver
    app.state.access_service = access
    app.state.code_dispatcher = dispatcher
    app.state.auth_service = AuthService(
        identity_store,
        two_factor,
        resolver,
        audit_trail,
        access_token_expire_seconds=settings.access_token_expire_seconds,
        self_registration_enabled=settings.self_registration_enabled,
    )
    app.state.admin_service = AdminService(identity_store, resolver, audit_trail, sharing=share_service)
    app.state.document_service = DocumentService(document_store, access, resolver, audit_trail)
    app.state.share_service = share_service


async def close_app_state(app: FastAPI) -> None:
    await app.state.audit_trail.stop()
    if app.state.cache is not None:
        await app.state.cache.close()
    await app.state.engine.dispose()


async def _bootstrap_admin(app: FastAPI, settings: Settings) -> None:
    """Provision the first admin from ADMIN_EMAIL / ADMIN_PASSWORD on an empty database."""
    store: IdentityStore = app.state.identity_store
    if not (settings.admin_email and settings.admin_password) or await store.has_users():
        return
    admin_id = await store.create(
        Identity(
            email=settings.admin_email,
            first_name="System",
            last_name="Administrator",
            role=SystemRole.admin,
            hashed_password=hash_password(settings.admin_password),
        )
    )
    logger.info("Bootstrap admin created (id=%s)", admin_id)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("TechPacker API starting up")
    settings = get_settings()
    engine = create_engine(settings.database_url)
    cache = create_cache(settings)
    dispatcher = EmailCodeDispatcher.from_settings(settings)
    if not dispatcher.is_configured:
        if settings.debug:
            logger.warning("SMTP is not configured -- two-factor codes will be logged (debug mode)")
        else:
            logger.warning("SMTP is not configured -- two-factor codes cannot be delivered")
    await wire_app_state(app, settings, engine, cache, dispatcher)
    await _bootstrap_admin(app, settings)
    logger.info("Services initialized (cache=%s)", settings.cache_backend)

    yield

    await close_app_state(app)
    logger.info("TechPacker API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TechPacker API",
    description="Authentication, sessions and document access control for TechPacker.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler; wall-clock time around
# call_next gives the latency of every response.
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(documents_router, prefix="/api/v1", tags=["Documents"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same envelope so API clients can parse errors
# uniformly and branch on errorCode.
# ---------------------------------------------------------------------------


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    return envelope(
        exc.details or None,
        exc.message,
        status_code=exc.status_code,
        success=False,
        error_code=exc.error_code,
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a per-route limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = envelope(
        message="Too many requests. Please slow down.",
        status_code=429,
        success=False,
        error_code="RATE_LIMITED",
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body, path and query validation failures share the VALIDATION_ERROR code."""
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return envelope(
        {"errors": errors},
        "Validation failed.",
        status_code=400,
        success=False,
        error_code="VALIDATION_ERROR",
    )


_HTTP_ERROR_CODES = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 409: "CONFLICT", 429: "RATE_LIMITED"}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes, wrong methods and any HTTPException raised by a dependency."""
    return envelope(
        message=str(exc.detail),
        status_code=exc.status_code,
        success=False,
        error_code=_HTTP_ERROR_CODES.get(exc.status_code, f"HTTP_{exc.status_code}"),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return envelope(
        message="An unexpected error occurred.",
        status_code=500,
        success=False,
        error_code="INTERNAL_ERROR",
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return API liveness plus database and cache status.

    A failing cache reports "degraded", not an error: the service still works
    without it.
    """
    components = {"app": "ok"}
    try:
        async with request.app.state.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except Exception as exc:  # noqa: BLE001
        logger.error("Health check: database unreachable: %s", exc)
        components["database"] = "error"

    cache: Optional[Cache] = request.app.state.cache
    if cache is None:
        components["cache"] = "disabled"
    else:
        try:
            await cache.get("health:probe")
            components["cache"] = "ok"
        except Exception as exc:  # noqa: BLE001
            logger.warning("Health check: cache unreachable: %s", exc)
            components["cache"] = "degraded"

    healthy = components["database"] == "ok"
    payload = HealthResponse(status="healthy" if healthy else "unhealthy", version=VERSION, components=components)
    return envelope(
        payload.model_dump(),
        "Service is healthy." if healthy else "Database unavailable.",
        status_code=200 if healthy else 503,
        success=healthy,
        error_code=None if healthy else "DEPENDENCY_UNAVAILABLE",
    )
