"""
api/main.py -- FastAPI application entry point for MedPortal.

Exposes the authorization and session core over HTTP. Every protected route
goes through the RequestMediator built here; route modules only translate
between HTTP and the mediator.

Run with:  python main.py serve
           uvicorn asgi:app --reload

Middleware, first to see a request first:
  TrustedHostMiddleware  ALLOWED_HOSTS only, anything else is a 400
  CORSMiddleware         the local portal front ends
  SlowAPIMiddleware      login and register limits declared in users.py

Lifespan builds the stores and services once and tears them down on
shutdown. wire_services() is shared with the test suite so tests get exactly
the production object graph over in-memory databases.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.appointments import router as appointments_router
from api.routes.v1.lab_tests import router as lab_tests_router
from api.routes.v1.records import router as records_router
from api.routes.v1.users import router as users_router
from auth.audit import AuditLog
from auth.mediator import RequestMediator
from auth.notifications import NotificationOutbox
from auth.policy import PolicyEngine
from auth.service import CredentialService
from auth.store import AuthStore
from clinic.store import ClinicStore
from core.config import Settings, get_settings
from core.errors import InternalFailure, LockedOut, PortalError, RateLimited
from core.retry import RetryPolicy

VERSION = "1.0.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, _settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("medportal.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, settings: Settings, auth_store: AuthStore, clinic_store: ClinicStore) -> None:
    """Build the auth core over the given stores and publish it on app.state.

    Order matters: the audit log resumes its ordinal from the store, the
    credential service needs the audit log, and the mediator needs the rest.
    The clinic store's has_share() becomes the policy engine's consent hook.
    """
    audit = AuditLog(auth_store, settings.audit_sink)
    service = CredentialService(settings, auth_store, audit)
    policy = PolicyEngine(consent_hook=clinic_store.has_share)
    notifier = NotificationOutbox(auth_store)

    app.state.settings = settings
    app.state.auth_store = auth_store
    app.state.clinic_store = clinic_store
    app.state.audit = audit
    app.state.credentials = service
    app.state.policy = policy
    app.state.notifier = notifier
    app.state.mediator = RequestMediator(service, policy, notifier, settings)
    app.state.started_at = time.monotonic()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open both stores, wire the core, and close the stores again on shutdown."""
    settings = get_settings()
    logger.info("MedPortal API starting up")
    retry_policy = RetryPolicy.from_settings(settings)
    auth_store = AuthStore(settings.database_url, retry_policy)
    clinic_store = ClinicStore(settings.database_url, retry_policy)
    wire_services(app, settings, auth_store, clinic_store)
    logger.info(
        "Auth core initialized (session_ttl=%ss, lockout=%d/%ss)",
        settings.session_ttl_seconds,
        settings.lockout_threshold,
        settings.lockout_backoff_seconds,
    )

    yield

    clinic_store.close()
    auth_store.close()
    logger.info("MedPortal API shutdown complete")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="MedPortal API",
    description="Healthcare portal backend: accounts, sessions, role-based access, admin tooling.",
    version=VERSION,
    lifespan=lifespan,
    # Schema browsing is a development aid only.
    docs_url="/docs" if _settings.debug else None,
    redoc_url="/redoc" if _settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://localhost:5173", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-Timeout"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# The @limiter.limit decorators resolve the limiter through app.state.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Access log. Headers are never logged; they carry bearer tokens.
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
# Routers
# ---------------------------------------------------------------------------

app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(lab_tests_router, prefix="/api/v1", tags=["Lab Tests"])
app.include_router(records_router, prefix="/api/v1", tags=["Records"])
app.include_router(appointments_router, prefix="/api/v1", tags=["Appointments"])


# ---------------------------------------------------------------------------
# Exception handlers. Every failure leaves as {"error": {code, message, detail}}.
# ---------------------------------------------------------------------------


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    return _render_portal_error(request, exc)


def _render_portal_error(request: Request, exc: PortalError) -> JSONResponse:
    """Render any error kind from core/errors.py with its own code and status.

    InternalFailure never carries detail to the caller; the chained cause was
    already logged where it happened.
    """
    detail = exc.detail
    if isinstance(exc, InternalFailure):
        logger.error("Internal failure on %s %s", request.method, request.url.path)
        detail = None
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=detail),
        ).model_dump(),
    )
    if isinstance(exc, (LockedOut, RateLimited)):
        response.headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """slowapi's 429 rendered as RateLimited."""
    retry_after = int(getattr(exc, "retry_after", 60))
    return _render_portal_error(request, RateLimited(retry_after, detail=str(exc.detail)))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 validation_error. Pydantic's error list goes into detail."""
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


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown paths and methods become http_404 / http_405 in the envelope."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything that escaped the typed errors. The traceback stays in the server log."""
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
# Health. Public and outside the rate limiter.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and store reachability."""
    state = request.app.state
    components = {
        "authStore": "ok" if state.auth_store.ping() else "unavailable",
        "clinicStore": "ok" if state.clinic_store.ping() else "unavailable",
    }
    status = "ok" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
