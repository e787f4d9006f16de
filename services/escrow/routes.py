"""
Escrow Routes
=============

Read endpoints for loans, applications and commitments, plus the
operator endpoint that retries a stalled reveal.
"""

from fastapi import APIRouter, Query, Request, Response, status
from pydantic import BaseModel

from shared.blockchain.client import Application, ApplicationStatus, Loan
from shared.errors import AlreadyRevealed, ApplicationNotFound, LoanNotFound, StateConflict
from shared.logging import get_logger

from services.escrow.reveal import DefaultNotice, RevealOutcome, RevealRecord, RevealStatus
from services.escrow.runtime import EscrowServices

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================


class CommitmentLookupResponse(BaseModel):
    """Identity commitment behind an activity commitment."""

    activity_commitment: str
    identity_commitment: str | None = None
    found: bool


class RevealStatusResponse(BaseModel):
    """Reveal progress for one escrow (never includes the identity)."""

    loan_id: int
    activity_commitment: str
    revealed: bool
    halted: bool
    record: RevealRecord | None = None
    shares_held: int


def _services(request: Request) -> EscrowServices:
    return request.app.state.services


# ============================================================================
# Loans
# ============================================================================


@router.get("/loans", response_model=list[Loan], tags=["Loans"])
async def list_loans(request: Request) -> list[Loan]:
    """List every loan offer."""
    return await _services(request).ledger.list_loans()


@router.get("/loans/{loan_id}", response_model=Loan, tags=["Loans"])
async def get_loan(loan_id: int, request: Request) -> Loan:
    """Get one loan."""
    loan = await _services(request).ledger.get_loan(loan_id)
    if loan is None:
        raise LoanNotFound(f"loan {loan_id} does not exist", loan_id=loan_id)
    return loan


@router.get("/loans/{loan_id}/applications", response_model=list[Application], tags=["Loans"])
async def list_applications(loan_id: int, request: Request) -> list[Application]:
    """List applications against a loan."""
    ledger = _services(request).ledger
    if await ledger.get_loan(loan_id) is None:
        raise LoanNotFound(f"loan {loan_id} does not exist", loan_id=loan_id)
    return await ledger.list_applications(loan_id)


@router.get(
    "/loans/{loan_id}/applications/{activity_commitment}",
    response_model=Application,
    tags=["Loans"],
)
async def get_application(loan_id: int, activity_commitment: str, request: Request) -> Application:
    """Get the status of one application."""
    application = await _services(request).ledger.get_application(loan_id, activity_commitment)
    if application is None:
        raise ApplicationNotFound("no such application", loan_id=loan_id)
    return application


# ============================================================================
# Commitments
# ============================================================================


@router.get(
    "/commitments/by-activity/{activity_commitment}",
    response_model=CommitmentLookupResponse,
    tags=["Commitments"],
)
async def lookup_commitment(activity_commitment: str, request: Request) -> CommitmentLookupResponse:
    """Resolve an activity commitment to its identity commitment."""
    identity = await _services(request).registry.resolve(activity_commitment)
    return CommitmentLookupResponse(
        activity_commitment=activity_commitment,
        identity_commitment=identity,
        found=identity is not None,
    )


# ============================================================================
# Reveal administration
# ============================================================================


@router.get(
    "/loans/{loan_id}/reveal/{activity_commitment}",
    response_model=RevealStatusResponse,
    tags=["Admin"],
)
async def reveal_status(loan_id: int, activity_commitment: str, request: Request) -> RevealStatusResponse:
    """Reveal progress for an escrow."""
    coordinator = _services(request).coordinator
    record = await coordinator.get_record(loan_id, activity_commitment)
    return RevealStatusResponse(
        loan_id=loan_id,
        activity_commitment=activity_commitment,
        revealed=record is not None,
        halted=await coordinator.is_failed(loan_id, activity_commitment),
        record=record,
        shares_held=len(await coordinator.held_shares(loan_id, activity_commitment)),
    )


@router.post("/admin/reveal/{loan_id}/retry", response_model=RevealOutcome, tags=["Admin"])
async def retry_reveal(
    loan_id: int,
    request: Request,
    response: Response,
    activity_commitment: str | None = Query(None, description="Required for multi-borrower loans"),
) -> RevealOutcome:
    """
    Run a reveal attempt now.

    Returns 200 when revealed, 202 when shares are still missing (a retry
    job is queued). Already revealed or halted escrows are refused.
    """
    services = _services(request)
    if activity_commitment is None:
        defaulted = [
            a.activity_commitment
            for a in await services.ledger.list_applications(loan_id)
            if a.status == ApplicationStatus.DEFAULTED
        ]
        if len(defaulted) != 1:
            raise StateConflict(
                "activity_commitment is required unless exactly one application defaulted",
                loan_id=loan_id,
                defaulted=len(defaulted),
            )
        activity_commitment = defaulted[0]

    logger.info("manual_reveal_retry", loan_id=loan_id, activity_commitment=activity_commitment)
    outcome = await services.coordinator.on_default(
        DefaultNotice(loan_id=loan_id, activity_commitment=activity_commitment)
    )

    if outcome.status == RevealStatus.ALREADY_REVEALED:
        raise AlreadyRevealed("identity was already revealed", loan_id=loan_id)
    if outcome.status == RevealStatus.FAILED:
        raise StateConflict("reveal halted after a decryption failure", loan_id=loan_id)
    if outcome.status in (RevealStatus.INSUFFICIENT_SHARES, RevealStatus.IN_PROGRESS):
        response.status_code = status.HTTP_202_ACCEPTED
    return outcome


@router.get("/admin/retry-queue", tags=["Admin"])
async def retry_queue_status(request: Request) -> dict[str, int]:
    """Retry job counts by state."""
    return await _services(request).retry_queue.status()
