"""
FastAPI application main module.
Operational surface of the settlement pipeline: lifespan wiring of the service
context and scheduler, request logging, and uniform error envelopes.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from typing import Any, Optional
import time
import uuid
import os

from settlement.api.v1 import api_router
from settlement.config import SCHEDULER_SETTINGS
from settlement.context import ServiceContext, build_context
from settlement.database import create_tables
from settlement.exceptions import SettlementError
from settlement.utils import setup_logging, get_logger

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE"),
    audit_file=os.getenv("AUDIT_LOG_FILE"),
    enable_console=True
)

logger = get_logger(__name__)


def create_app(context: Optional[ServiceContext] = None, start_background: Optional[bool] = None) -> FastAPI:
    """Build the application.

    Args:
        context: Pre-built service context; built from configuration (and the
            database schema created) when omitted.
        start_background: Start the scheduler (ingestion + daily settlement) on startup.
            Defaults to the START_SCHEDULER setting.
    """
    if start_background is None:
        start_background = bool(SCHEDULER_SETTINGS["start_on_boot"])

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application startup initiated")
        owned = context is None
        ctx = context
        try:
            if ctx is None:
                logger.info("Creating database tables")
                create_tables()
                ctx = await build_context()
            app.state.context = ctx
            if start_background:
                ctx.scheduler.start()
            logger.info("Application startup completed successfully", scheduler=start_background)
            yield
        except Exception as e:  # pragma: no cover
            logger.error("Application startup failed", error=str(e), exc_info=True)
            raise
        finally:
            logger.info("Application shutdown initiated")
            if ctx is not None:
                if owned:
                    await ctx.close()
                else:
                    await ctx.scheduler.stop()
            app.state.context = None
            logger.info("Application shutdown completed")

    app = FastAPI(
        title="Creator Settlement Pipeline",
        description="""
        View-metrics ingestion, fraud scoring and daily payout settlement for promoters.

        ## Features
        * **Metrics ingestion** - Rate-limited collection from TikTok and Instagram
        * **Fraud detection** - Engagement-ratio and view-spike bot scoring
        * **Daily settlement** - Payouts per promoter and campaign for the previous day
        * **Payments** - Gateway disbursement with retries and status polling
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/api/v1/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.middleware("http")
    async def add_request_context_and_logging(request: Request, call_next):
        """Attach a request id and log each request with its timing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        logger.info(
            "Request started",
            method=request.method,
            url=str(request.url),
            request_id=request_id
        )

        response = await call_next(request)

        process_time_ms = round((time.time() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time_ms)

        logger.info(
            "Request completed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            process_time_ms=process_time_ms,
            request_id=request_id
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed", errors=exc.errors(), request_id=_request_id(request), url=str(request.url))
        return error_response(request, 422, "Request validation failed", details=jsonable_errors(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail, request_id=_request_id(request))
        return error_response(request, exc.status_code, exc.detail)

    @app.exception_handler(SettlementError)
    async def settlement_exception_handler(request: Request, exc: SettlementError):
        """Domain errors carry their own HTTP status."""
        logger.warning(
            "Settlement error",
            error=exc.message,
            error_type=type(exc).__name__,
            status_code=exc.status_code,
            request_id=_request_id(request)
        )
        return error_response(request, exc.status_code, exc.message, error_type=type(exc).__name__)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            request_id=_request_id(request),
            url=str(request.url),
            exc_info=True
        )
        return error_response(request, 500, "Internal server error")

    @app.get("/health", tags=["health"], summary="Basic health check")
    async def health_check(request: Request):
        ctx: Optional[ServiceContext] = getattr(request.app.state, "context", None)
        store_ok = bool(ctx and await ctx.store.ping())
        return {
            "status": "healthy" if store_ok else "degraded",
            "store": "ok" if store_ok else "unavailable",
            "scheduler_running": bool(ctx and ctx.scheduler.running),
        }

    app.include_router(api_router, prefix="/api/v1")
    return app


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(request: Request, status_code: int, message: Any, **extra: Any) -> JSONResponse:
    """Uniform failure envelope: ``success=False``, message, request id plus any extra keys."""
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **extra, "request_id": _request_id(request)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


app = create_app()
