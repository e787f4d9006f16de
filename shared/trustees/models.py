"""
Trustee API Models
==================

Request/response bodies exchanged with trustee endpoints. Field names
are camelCase on the wire.

Version: 0.1.0
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shared.vault.shamir import Share

# Header carrying the shared secret on share endpoints
TOKEN_HEADER = "X-Trustee-Token"


class TrusteeModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReceiveShareRequest(TrusteeModel):
    """POST /receive-share"""

    loan_id: int = Field(..., ge=0)
    activity_commitment: str = Field(..., min_length=1)
    share_index: int = Field(..., ge=1)
    share_value: str = Field(..., min_length=3, description='Share in "{index}-{hex}" form')


class ReceiveShareResponse(TrusteeModel):
    acknowledged: bool = True
    trustee_id: str
    stored: bool = Field(..., description="False when the identical share was already held")


class RequestShareRequest(TrusteeModel):
    """POST /request-share"""

    loan_id: int = Field(..., ge=0)
    activity_commitment: str = Field(..., min_length=1)
    reason: str = Field(default="loan_default", min_length=1)


class ShareResponse(TrusteeModel):
    loan_id: int
    share_index: int
    share_value: str

    def to_share(self) -> Share:
        return Share.decode(self.share_value)


class ReauthorizeRequest(TrusteeModel):
    """POST /reauthorize"""

    loan_id: int = Field(..., ge=0)
    activity_commitment: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class HeldShare(TrusteeModel):
    """A share as persisted by a trustee."""

    loan_id: int
    activity_commitment: str
    share_index: int
    share_value: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    released: bool = False
    released_at: datetime | None = None
    release_reason: str | None = None
    release_count: int = 0


class ShareStatus(TrusteeModel):
    """GET /share-status/{loan_id} item (never includes the share value)."""

    loan_id: int
    activity_commitment: str
    share_index: int
    released: bool
    release_count: int
    received_at: datetime
    released_at: datetime | None = None
