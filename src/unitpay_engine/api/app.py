"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from unitpay_engine.api.routes import (
    chain_router,
    health_router,
    intents_router,
    lps_router,
    webhooks_router,
)
from unitpay_engine.config import configure_logging, get_settings
from unitpay_engine.database import dispose_db, init_db
from unitpay_engine.engine import SettlementEngine
from unitpay_engine.engine_config import EngineConfig
from unitpay_engine.events import InMemoryNotifier
from unitpay_engine.exceptions import (
    ExternalUnavailable,
    InsufficientQuota,
    IntentNotFound,
    InvalidStateTransition,
    LiquidityProviderNotFound,
    NotAuthorized,
    TaskAlreadyClaimed,
    Unreconcilable,
    ValidationError,
    WithdrawalNotAuthorized,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    owns_engine = getattr(app.state, "engine", None) is None
    if owns_engine:
        _, session_factory = init_db()
        app.state.engine = SettlementEngine(
            session_factory,
            EngineConfig.from_settings(settings),
            notifier=InMemoryNotifier(),
        )
    engine: SettlementEngine = app.state.engine
    scheduler = engine.scheduler()
    scheduler.start()
    yield
    # Shutdown
    scheduler.stop()
    if owns_engine:
        await engine.aclose()
        await dispose_db()


def _error(status_code: int, code: str, exc: Exception, errors: list[str] | None = None) -> JSONResponse:
    content: dict[str, object] = {"detail": str(exc), "code": code}
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=content)


def create_app(engine: SettlementEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Pass ``engine`` to serve a pre-built engine (tests, embedding);
    otherwise the lifespan builds one from environment settings.
    """
    app = FastAPI(
        title="UnitPay Settlement Engine API",
        description="Payment intent settlement and reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers. Starlette picks the most specific class, so
    # IntentNotFound wins over its ValidationError base.
    @app.exception_handler(IntentNotFound)
    @app.exception_handler(LiquidityProviderNotFound)
    async def not_found_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "NOT_FOUND", exc)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", exc)

    @app.exception_handler(NotAuthorized)
    async def not_authorized_handler(request: Request, exc: NotAuthorized) -> JSONResponse:
        return _error(status.HTTP_403_FORBIDDEN, "NOT_AUTHORIZED", exc)

    @app.exception_handler(WithdrawalNotAuthorized)
    async def withdrawal_handler(request: Request, exc: WithdrawalNotAuthorized) -> JSONResponse:
        return _error(status.HTTP_403_FORBIDDEN, "WITHDRAWAL_NOT_AUTHORIZED", exc, exc.reasons)

    @app.exception_handler(InvalidStateTransition)
    async def transition_handler(request: Request, exc: InvalidStateTransition) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, "INVALID_STATE_TRANSITION", exc)

    @app.exception_handler(TaskAlreadyClaimed)
    async def claimed_handler(request: Request, exc: TaskAlreadyClaimed) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, "TASK_ALREADY_CLAIMED", exc)

    @app.exception_handler(InsufficientQuota)
    async def quota_handler(request: Request, exc: InsufficientQuota) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, "INSUFFICIENT_QUOTA", exc)

    @app.exception_handler(Unreconcilable)
    async def unreconcilable_handler(request: Request, exc: Unreconcilable) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, "UNRECONCILABLE", exc)

    @app.exception_handler(ExternalUnavailable)
    async def unavailable_handler(request: Request, exc: ExternalUnavailable) -> JSONResponse:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "EXTERNAL_UNAVAILABLE", exc)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(lps_router, prefix="/api/v1")
    app.include_router(intents_router, prefix="/api/v1")
    app.include_router(chain_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
