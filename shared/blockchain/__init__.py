"""
Blockchain Module
=================

Client boundary for the commitment-gated loan escrow ledger.

Supports:
- Mock (development/testing)
- Testnet / Mainnet (client not bundled)

Usage:
    from shared.blockchain import get_ledger_client

    ledger = get_ledger_client()

    loan = await ledger.create_offer(
        lender="0xlender",
        amount_per_borrower=1_000,
        total_slots=1,
        interest_rate_bps=500,
        repayment_period=600,
        min_required_score=500,
    )
    await ledger.apply_for_loan(loan.id, commitment, proof_hash, claimed_score=720)
"""

from shared.blockchain.client import (
    BPS_DENOMINATOR,
    LOAN_STATE_ORDER,
    Application,
    ApplicationStatus,
    DefaultOutcome,
    IdentityEscrow,
    LedgerClient,
    LedgerEvent,
    LedgerEventType,
    Loan,
    LoanState,
    RevealReceipt,
    get_ledger_client,
    reset_ledger_client,
    set_ledger_client,
)
from shared.blockchain.codec import decode_optional_uint, decode_uint, encode_u256
from shared.blockchain.mock import MockLedgerClient

__all__ = [
    # Client
    "LedgerClient",
    "get_ledger_client",
    "set_ledger_client",
    "reset_ledger_client",
    # Models
    "Loan",
    "LoanState",
    "Application",
    "ApplicationStatus",
    "IdentityEscrow",
    "LedgerEvent",
    "LedgerEventType",
    "DefaultOutcome",
    "RevealReceipt",
    "LOAN_STATE_ORDER",
    "BPS_DENOMINATOR",
    # Codec
    "decode_uint",
    "decode_optional_uint",
    "encode_u256",
    # Implementations
    "MockLedgerClient",
]
