"""
Main FastAPI application module for the M-PESA deposit relay.

create_app() wires Settings into the gateway client, the ledger store, the
initiator and the reconciler, configures middleware and the health
endpoint, and registers the payment router.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings, get_settings
from .db import create_engine, create_session_factory, init_models
from .routers import payments
from .services.initiator import DepositInitiator
from .services.ledger import LedgerStore
from .services.mpesa import MPesaGateway
from .services.reconciler import CallbackReconciler
from .utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[MPesaGateway] = None,
    engine: Optional[AsyncEngine] = None,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Relay settings; loaded from the environment if omitted
        gateway: Daraja client; built from settings if omitted
        engine: Ledger database engine; built from settings.database_url if omitted

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    setup_logging(level="DEBUG" if settings.debug else "INFO")

    engine = engine or create_engine(settings.database_url, echo=settings.debug)
    store = LedgerStore(
        create_session_factory(engine),
        provisional_id_prefix=settings.provisional_id_prefix,
    )
    gateway = gateway or MPesaGateway(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Application starting up", extra={"environment": settings.environment})
        await init_models(engine)

        yield

        logger.info("Application shutting down")
        await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        description="Relays M-PESA STK push deposits and reconciles their callbacks",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.initiator = DepositInitiator(
        gateway, store, phone_region=settings.phone_default_region
    )
    app.state.reconciler = CallbackReconciler(store)

    # Keyed on client IP; one limiter per app
    limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next) -> Response:
        """Log method, path, status and processing time of every request."""
        start_time = time.time()
        correlation_id = getattr(request.state, "correlation_id", None)

        logger.info(
            f"Incoming request: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "correlation_id": correlation_id,
            },
        )

        response = await call_next(request)
        process_time = time.time() - start_time

        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time": f"{process_time:.4f}s",
                "correlation_id": correlation_id,
            },
        )

        response.headers["X-Process-Time"] = str(process_time)
        return response

    # Added last so it wraps log_requests and sets the id before it is logged
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next) -> Response:
        """
        Attach a correlation ID to each request for log tracing.

        Reuses the caller's X-Correlation-ID header when present and echoes
        it back on the response.
        """
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Catch unhandled exceptions, log them with a unique error ID, and
        return a 500 without technical details.
        """
        error_id = str(uuid.uuid4())
        logger.error(
            "Unhandled exception occurred",
            extra={
                "error_id": error_id,
                "correlation_id": getattr(request.state, "correlation_id", None),
                "error_type": type(exc).__name__,
                "error_message": str(exc),
                "path": request.url.path,
                "method": request.method,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal server error",
                "error_id": error_id,
            },
            headers={"X-Error-ID": error_id},
        )

    @app.get("/", tags=["health"])
    async def health_check() -> dict:
        """Liveness descriptor listing the relay endpoints."""
        return {
            "status": "ok",
            "service": settings.app_name,
            "environment": settings.environment,
            "endpoints": {
                "stkpush": "POST /stkpush",
                "callback": "POST /callback",
                "health": "GET /",
            },
        }

    app.include_router(
        payments.create_router(limiter, settings.stkpush_rate_limit), tags=["payments"]
    )

    logger.info("M-PESA relay application initialized")
    return app


def run() -> None:
    """Start the relay under uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(
        "mpesa_relay.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    run()
