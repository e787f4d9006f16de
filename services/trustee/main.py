"""
Trustee Service - Main Application
==================================

FastAPI application run by each independent trustee. It accepts key
shares at escrow time and releases each share at most once per
authorisation when a default is reported.

The share endpoints expect to be reachable only from the escrow service
(network ACL or private network). When TRUSTEE_AUTH_TOKEN is set they
also require that value in the X-Trustee-Token header; health and
share-status stay open and never expose share values.

Version: 0.1.0
"""

import secrets
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

from shared.config import settings
from shared.errors import ValidationError
from shared.logging import get_logger, setup_logging
from shared.models.common import HealthResponse
from shared.store import KeyValueStore, get_store
from shared.trustees.models import (
    TOKEN_HEADER,
    HeldShare,
    ReauthorizeRequest,
    ReceiveShareRequest,
    ReceiveShareResponse,
    RequestShareRequest,
    ShareResponse,
    ShareStatus,
)
from shared.vault.shamir import Share


# Setup logging
setup_logging(
    log_level=settings.log_level.value,
    json_logs=settings.is_production,
    service_name="trustee",
)

logger = get_logger(__name__)

token_scheme = APIKeyHeader(name=TOKEN_HEADER, auto_error=False)


class TrusteeVault:
    """
    Share storage for one trustee.

    Keys:
        trustee:{id}:share:{loan}:{activity}            held share
        trustee:{id}:release:{loan}:{activity}:{n}      n-th release claim
        trustee:{id}:audit:{loan}:{activity}:{uuid}     audit log entry
    """

    def __init__(self, store: KeyValueStore, trustee_id: str) -> None:
        self.store = store
        self.trustee_id = trustee_id
        self._prefix = f"trustee:{trustee_id}:"

    def _share_key(self, loan_id: int, activity_commitment: str) -> str:
        return f"{self._prefix}share:{loan_id}:{activity_commitment}"

    async def get(self, loan_id: int, activity_commitment: str) -> HeldShare | None:
        raw = await self.store.get(self._share_key(loan_id, activity_commitment))
        return None if raw is None else HeldShare.model_validate(raw)

    async def save(self, held: HeldShare) -> None:
        await self.store.put(
            self._share_key(held.loan_id, held.activity_commitment),
            held.model_dump(mode="json"),
        )

    async def receive(self, request: ReceiveShareRequest) -> bool:
        """Store a share. Returns False when the identical share is already held."""
        held = HeldShare(
            loan_id=request.loan_id,
            activity_commitment=request.activity_commitment,
            share_index=request.share_index,
            share_value=request.share_value,
        )
        key = self._share_key(request.loan_id, request.activity_commitment)
        if await self.store.put_if_absent(key, held.model_dump(mode="json")):
            return True
        existing = await self.get(request.loan_id, request.activity_commitment)
        if existing is not None and existing.share_value != request.share_value:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A different share is already held for this loan",
            )
        return False

    async def release(self, held: HeldShare, reason: str) -> bool:
        """Mark a share released. False if this authorisation was already used."""
        claim = f"{self._prefix}release:{held.loan_id}:{held.activity_commitment}:{held.release_count}"
        if not await self.store.put_if_absent(claim, {"reason": reason}):
            return False
        held.released = True
        held.released_at = datetime.now(UTC)
        held.release_reason = reason
        held.release_count += 1
        await self.save(held)
        return True

    async def audit(self, action: str, loan_id: int, activity_commitment: str, **details: Any) -> None:
        entry = {
            "action": action,
            "trustee_id": self.trustee_id,
            "loan_id": loan_id,
            "activity_commitment": activity_commitment,
            "timestamp": datetime.now(UTC).isoformat(),
            **details,
        }
        await self.store.put(f"{self._prefix}audit:{loan_id}:{activity_commitment}:{uuid.uuid4().hex}", entry)
        logger.info(action, **{k: v for k, v in entry.items() if k != "action"})

    async def audit_log(self, loan_id: int) -> list[dict[str, Any]]:
        return [entry async for _, entry in self.store.scan(f"{self._prefix}audit:{loan_id}:")]

    async def statuses(self, loan_id: int) -> list[ShareStatus]:
        return [
            ShareStatus(
                loan_id=held.loan_id,
                activity_commitment=held.activity_commitment,
                share_index=held.share_index,
                released=held.released,
                release_count=held.release_count,
                received_at=held.received_at,
                released_at=held.released_at,
            )
            async for held in self._held(loan_id)
        ]

    async def _held(self, loan_id: int):
        async for _, raw in self.store.scan(f"{self._prefix}share:{loan_id}:"):
            yield HeldShare.model_validate(raw)


def create_app(
    store: KeyValueStore | None = None,
    trustee_id: str | None = None,
    auth_token: str | None = None,
) -> FastAPI:
    """
    Build the trustee application.

    Args:
        store: Share storage (defaults to the configured backend)
        trustee_id: This trustee's id (defaults to TRUSTEE_NODE_ID)
        auth_token: Shared secret for the share endpoints (defaults to
            TRUSTEE_AUTH_TOKEN; empty disables the check)
    """
    if store is None:
        store = get_store()
    if auth_token is None:
        auth_token = settings.trustee.auth_token.get_secret_value()
    vault = TrusteeVault(store, trustee_id or settings.trustee.node_id)

    async def require_escrow_service(token: Annotated[str | None, Depends(token_scheme)]) -> None:
        """Reject share requests without the shared secret, when one is configured."""
        if not auth_token:
            return
        if token is None or not secrets.compare_digest(token, auth_token):
            logger.warning("trustee_token_rejected", trustee_id=vault.trustee_id, header_present=token is not None)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing or invalid trustee token",
            )

    app = FastAPI(
        title=f"zkescrow Trustee ({vault.trustee_id})",
        description="Holds and releases identity key shares",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.vault = vault

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
        """Service health check."""
        store_health = await vault.store.health_check()
        return HealthResponse(
            status="healthy" if store_health.get("status") == "healthy" else "degraded",
            service=vault.trustee_id,
            version="0.1.0",
            components={"store": store_health},
        )

    # ========================================================================
    # Share Endpoints
    # ========================================================================

    @app.post(
        "/receive-share",
        response_model=ReceiveShareResponse,
        tags=["Shares"],
        dependencies=[Depends(require_escrow_service)],
    )
    async def receive_share(request: ReceiveShareRequest) -> ReceiveShareResponse:
        """Accept a key share for (loan, activity commitment)."""
        try:
            share = Share.decode(request.share_value)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
        if share.index != request.share_index:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="shareIndex does not match shareValue",
            )

        stored = await vault.receive(request)
        if stored:
            await vault.audit(
                "share_received",
                request.loan_id,
                request.activity_commitment,
                share_index=request.share_index,
            )
        return ReceiveShareResponse(trustee_id=vault.trustee_id, stored=stored)

    @app.post(
        "/request-share",
        response_model=ShareResponse,
        tags=["Shares"],
        dependencies=[Depends(require_escrow_service)],
    )
    async def request_share(request: RequestShareRequest) -> ShareResponse:
        """Release the held share once per authorisation."""
        held = await vault.get(request.loan_id, request.activity_commitment)
        if held is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Share not found")

        if held.released or not await vault.release(held, request.reason):
            await vault.audit(
                "share_release_refused",
                request.loan_id,
                request.activity_commitment,
                reason=request.reason,
            )
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Share already released; re-authorization required",
            )

        await vault.audit(
            "share_released",
            request.loan_id,
            request.activity_commitment,
            share_index=held.share_index,
            reason=request.reason,
        )
        return ShareResponse(
            loan_id=held.loan_id,
            share_index=held.share_index,
            share_value=held.share_value,
        )

    @app.post(
        "/reauthorize",
        response_model=ShareStatus,
        tags=["Shares"],
        dependencies=[Depends(require_escrow_service)],
    )
    async def reauthorize(request: ReauthorizeRequest) -> ShareStatus:
        """Allow one more release of a previously released share."""
        held = await vault.get(request.loan_id, request.activity_commitment)
        if held is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Share not found")

        held.released = False
        await vault.save(held)
        await vault.audit(
            "share_reauthorized",
            request.loan_id,
            request.activity_commitment,
            reason=request.reason,
        )
        return ShareStatus(
            loan_id=held.loan_id,
            activity_commitment=held.activity_commitment,
            share_index=held.share_index,
            released=held.released,
            release_count=held.release_count,
            received_at=held.received_at,
            released_at=held.released_at,
        )

    @app.get("/share-status/{loan_id}", response_model=list[ShareStatus], tags=["Shares"])
    async def share_status(loan_id: int) -> list[ShareStatus]:
        """Release status of every share held for a loan."""
        return await vault.statuses(loan_id)

    # ========================================================================
    # Error Handlers
    # ========================================================================

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Handle HTTP exceptions."""
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.detail,
                "status_code": exc.status_code,
            },
        )

    return app


app = create_app()


# ============================================================================
# Run with Uvicorn
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.trustee.main:app",
        host="0.0.0.0",
        port=settings.ports.trustee,
        reload=settings.debug,
        log_level=settings.log_level.value.lower(),
    )
