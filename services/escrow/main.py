"""
Escrow Service - Main Application
=================================

FastAPI application for the loan escrow: read access to loans,
applications and commitments, and the background workers that turn
ledger defaults into identity reveals.

Version: 0.1.0
"""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.config import settings
from shared.errors import (
    AlreadyRevealed,
    ApplicationNotFound,
    BlobNotFound,
    DecryptionFailed,
    EscrowError,
    InsufficientShares,
    InvariantViolation,
    LoanNotFound,
    NotAuthorized,
    PartialDistribution,
    ProofInvalid,
    RevealInProgress,
    StateConflict,
    TransientNetworkError,
    ValidationError,
)
from shared.logging import get_logger, setup_logging
from shared.models.common import ErrorResponse, HealthResponse

from services.escrow import routes
from services.escrow.runtime import EscrowServices, build_services


# Setup logging
setup_logging(
    log_level=settings.log_level.value,
    json_logs=settings.is_production,
    service_name="escrow",
)

logger = get_logger(__name__)

# Most specific first
ERROR_STATUS: list[tuple[type[EscrowError], int]] = [
    (LoanNotFound, status.HTTP_404_NOT_FOUND),
    (ApplicationNotFound, status.HTTP_404_NOT_FOUND),
    (BlobNotFound, status.HTTP_404_NOT_FOUND),
    (NotAuthorized, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ProofInvalid, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StateConflict, status.HTTP_409_CONFLICT),
    (AlreadyRevealed, status.HTTP_409_CONFLICT),
    (DecryptionFailed, status.HTTP_409_CONFLICT),
    (RevealInProgress, status.HTTP_409_CONFLICT),
    (TransientNetworkError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InsufficientShares, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PartialDistribution, status.HTTP_503_SERVICE_UNAVAILABLE),
    (InvariantViolation, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(exc: EscrowError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(services: EscrowServices | None = None, run_background: bool = True) -> FastAPI:
    """
    Build the escrow application.

    Args:
        services: Pre-built component graph (built from settings when omitted)
        run_background: Start watcher, reveal consumer and retry loop on startup
    """
    if services is None:
        services = build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        """Application lifespan manager."""
        logger.info(
            "escrow_service_starting",
            environment=settings.environment.value,
            port=settings.ports.escrow,
            ledger_mode=services.ledger.mode.value,
        )
        if run_background:
            services.start()

        yield

        # Shutdown
        logger.info("escrow_service_shutting_down")
        await services.stop()

    app = FastAPI(
        title="zkescrow Escrow Service",
        description="Commitment-gated loan escrow with threshold identity reveal",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.origins_list,
        allow_credentials=settings.cors.allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Health Check Endpoints
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """
        Service health check.

        Returns health status of the service and its dependencies.
        """
        components: dict[str, dict[str, Any]] = {
            "ledger": await services.ledger.health_check(),
            "store": await services.store.health_check(),
            "watcher": {
                "status": "healthy",
                "position": await services.watcher.get_position(),
                "pending_notices": services.notices.qsize(),
            },
        }
        all_healthy = all(c.get("status") == "healthy" for c in components.values())

        return HealthResponse(
            status="healthy" if all_healthy else "degraded",
            service="escrow",
            version="0.1.0",
            components=components,
        )

    app.include_router(routes.router)

    # ========================================================================
    # Error Handlers
    # ========================================================================

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
        """Map the escrow error taxonomy onto HTTP responses."""
        code = status_for(exc)
        log = logger.error if code >= 500 else logger.warning
        log(
            "escrow_error",
            error_code=exc.code,
            error=exc.message,
            status_code=code,
            path=request.url.path,
        )
        body = ErrorResponse(error=exc.message, error_code=exc.code, details=exc.details or None)
        return JSONResponse(status_code=code, content=body.model_dump(mode="json"))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        body = ErrorResponse(error="Internal server error", error_code="internal_error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
        )

    return app


# ============================================================================
# Run with Uvicorn
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(),
        host="0.0.0.0",
        port=settings.ports.escrow,
        log_level=settings.log_level.value.lower(),
    )
