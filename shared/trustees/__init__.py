"""
Trustees Module
===============

Client and wire models for the trustee network that holds key shares.

Usage:
    from shared.trustees import TrusteeClient

    client = TrusteeClient()
    await client.distribute(loan_id, commitment, escrowed.assignments)
"""

from shared.trustees.client import (
    CollectionResult,
    ShareDeliveryResult,
    ShareRequestResult,
    TrusteeClient,
)
from shared.trustees.models import (
    HeldShare,
    ReauthorizeRequest,
    ReceiveShareRequest,
    ReceiveShareResponse,
    RequestShareRequest,
    ShareResponse,
    ShareStatus,
)

__all__ = [
    # Client
    "TrusteeClient",
    "ShareDeliveryResult",
    "ShareRequestResult",
    "CollectionResult",
    # Wire models
    "ReceiveShareRequest",
    "ReceiveShareResponse",
    "RequestShareRequest",
    "ShareResponse",
    "ReauthorizeRequest",
    "HeldShare",
    "ShareStatus",
]
