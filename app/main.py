"""
Amora — FastAPI Application Entry Point

Production-ready application with:
- Async lifespan management (document store client)
- CORS, timeout, and request-scoped structured logging
- Uniform JSON error envelopes
- Health-check endpoints (liveness + deep readiness)
- In-flight request tracking so shutdown can drain
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.api.exception_handlers import setup_exception_handlers
from app.config import get_settings
from app.store import create_store

settings = get_settings()

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.LOG_LEVEL.upper())
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger("amora")

REQUEST_ID_HEADER = "X-Request-ID"


# ---------------------------------------------------------------------------
# In-flight request tracking
# ---------------------------------------------------------------------------

class RequestTracker:
    """Counts HTTP requests in flight; ``drain`` waits for them to finish.

    WebSocket streams are long-lived and deliberately not counted.
    """

    def __init__(self) -> None:
        self.active = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def started(self) -> None:
        self.active += 1
        self._idle.clear()

    def finished(self) -> None:
        self.active = max(self.active - 1, 0)
        if self.active == 0:
            self._idle.set()

    async def drain(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("drain_timeout_exceeded", remaining_requests=self.active)
            return False
        return True


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the document store on startup; drain and close it on shutdown.

    A store already placed on ``app.state`` (tests, embedding) is reused.
    """
    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        log_level=settings.LOG_LEVEL,
        store_backend=settings.STORE_BACKEND,
    )
    if getattr(app.state, "store", None) is None:
        app.state.store = create_store(settings)
    logger.info("startup_complete", store=type(app.state.store).__name__)

    yield

    logger.info("shutdown_begin")
    await app.state.tracker.drain(settings.SHUTDOWN_DRAIN_SECONDS)
    await app.state.store.close()
    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware classes
# ---------------------------------------------------------------------------

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 504 once a request has run longer than ``timeout_seconds``."""

    def __init__(self, app, timeout_seconds: float) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("request_timeout", path=request.url.path, timeout=self.timeout_seconds)
            return JSONResponse(
                status_code=504,
                content={"error_code": "TIMEOUT", "message": "Request timed out", "details": None},
            )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id to every log line of the request and log its outcome.

    The id is taken from the ``X-Request-ID`` header when the client (or a
    load balancer) sent one, and echoed back on the response.
    """

    def __init__(self, app, tracker: RequestTracker) -> None:
        super().__init__(app)
        self.tracker = tracker

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        start = time.perf_counter()
        self.tracker.started()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_error", duration_ms=round((time.perf_counter() - start) * 1000, 2))
            raise
        finally:
            self.tracker.finished()

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_handled",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Amora",
        description="Matching and real-time communication engine",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )
    app.state.tracker = RequestTracker()

    # -- Middleware (last added runs first) -------------------------------- #

    app.add_middleware(TimeoutMiddleware, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)
    app.add_middleware(RequestContextMiddleware, tracker=app.state.tracker)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )

    setup_exception_handlers(app)

    # -- Health-check endpoints -------------------------------------------- #

    @app.get("/health", tags=["health"])
    async def health_liveness() -> dict:
        """Liveness probe: healthy while the process serves requests."""
        return {"status": "healthy"}

    @app.get("/health/deep", tags=["health"])
    async def health_deep(request: Request) -> dict:
        """Readiness probe: one document read plus a bucket existence check."""
        result: dict = {"status": "healthy", "store": "connected", "gcs": "accessible"}

        try:
            store = getattr(request.app.state, "store", None)
            if store is None:
                raise RuntimeError("Document store not initialised")
            await store.get("_health/ping")
        except Exception as exc:
            logger.error("health_store_failure", error=str(exc))
            result["store"] = f"error: {exc}"
            result["status"] = "degraded"

        if not settings.GCS_BUCKET_NAME:
            result["gcs"] = "not_configured"
        else:
            try:
                from app.utils.storage import get_bucket

                if not await asyncio.to_thread(lambda: get_bucket().exists()):
                    result["gcs"] = "missing"
                    result["status"] = "degraded"
            except Exception as exc:
                logger.error("health_gcs_failure", error=str(exc))
                result["gcs"] = f"error: {exc}"
                result["status"] = "degraded"

        return result

    # -- API router -------------------------------------------------------- #

    from app.api.router import router as api_router

    app.include_router(api_router, prefix="/api/v1")
    return app


app = create_app()
