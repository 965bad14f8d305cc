"""
api/main.py -- FastAPI application entry point for TokenKeeper.

Exposes the token service over HTTP. The HTTP layer is a thin adapter: it
authenticates the bearer credential, calls TokenService, and maps domain
errors onto status codes. All rules live in auth/.

Run with:      uvicorn asgi:app --reload

Middleware, in the order a request meets it:
  TrustedHostMiddleware  Host header must match ALLOWED_HOSTS
  CORSMiddleware         browser origins from CORS_ORIGINS
  SlowAPIMiddleware      @limiter.limit() quotas (token creation)

Lifespan handles startup (stores, owner registry, token service, prune task)
and shutdown (cancel prune task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.protected import router as protected_router
from api.routes.v1.tokens import router as tokens_router
from auth.owners import USER_KIND, OwnerRegistry
from auth.service import TokenService
from auth.store import TokenStore, UserStore
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokenkeeper.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(app: FastAPI, user_store: UserStore, token_store: TokenStore, settings: Settings) -> None:
    """Build the owner registry and token service and hang them on app.state.

    Shared by the real lifespan and the test lifespan so both wire the
    application the same way.
    """
    owners = OwnerRegistry()
    owners.register(USER_KIND, user_store.resolve_owner)
    app.state.user_store = user_store
    app.state.token_store = token_store
    app.state.owners = owners
    app.state.token_service = TokenService.from_settings(token_store, owners, settings)


# ---------------------------------------------------------------------------
# Background prune task
# ---------------------------------------------------------------------------


async def _prune_loop(app: FastAPI, interval_seconds: int, grace: timedelta) -> None:
    """Every interval_seconds, prune tokens that expired more than `grace` ago.

    Cancelled from lifespan shutdown; the CancelledError surfaces from the
    sleep. A sweep that raises is logged and the loop carries on.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            app.state.token_service.prune_expired(older_than=grace)
        except Exception:
            logger.exception("Expired token prune failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores, wire the service and start pruning; undo it in reverse on shutdown."""
    settings = get_settings()
    logger.info("TokenKeeper API starting up")
    attach_services(app, UserStore(settings.database_url), TokenStore(settings.database_url), settings)
    logger.info("Token service initialized (owner kinds: %s)", ", ".join(app.state.owners.kinds()))
    app.state.prune_task = asyncio.create_task(
        _prune_loop(app, settings.prune_interval_seconds, timedelta(hours=settings.prune_expired_after_hours))
    )

    yield

    app.state.prune_task.cancel()
    app.state.token_store.close()
    app.state.user_store.close()
    logger.info("TokenKeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TokenKeeper API",
    description="Opaque bearer-token issuance, verification, scoping and revocation.",
    version=__version__,
    lifespan=lifespan,
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
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPIMiddleware reads the limiter from app.state.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status and latency. Never logs headers -- the
# Authorization header carries a live credential.
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

app.include_router(tokens_router, prefix="/api/v1", tags=["Tokens"])
app.include_router(protected_router, prefix="/api/v1", tags=["Protected resources"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body is {"error": {"code", "message", "detail"?}}.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Rate limit hit: 429 rate_limited with Retry-After."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body, path or query parameters did not validate: 422 validation_error."""
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


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap HTTPException in the error envelope.

    Routes pass a {"code", "message"} dict as detail, which is used as-is.
    Anything else becomes http_<status>. Response headers such as
    WWW-Authenticate are kept.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected failure: 500 internal_error. The traceback is logged, not returned."""
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
# Health
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Liveness probe. No auth, no rate limit."""
    return HealthResponse(version=__version__)
