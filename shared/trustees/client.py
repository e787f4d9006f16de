"""
Trustee Client
==============

Distributes key shares to trustee endpoints and collects them back
after a default.

- distribute: every share is sent independently with its own timeout and
  retry budget; failures are reported per share
- collect: all trustees are asked in parallel and the call returns as
  soon as enough shares arrived or every trustee answered

Version: 0.1.0
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.config import settings
from shared.errors import PartialDistribution, TransientNetworkError, ValidationError
from shared.logging import get_logger
from shared.trustees.models import TOKEN_HEADER, ReceiveShareRequest, RequestShareRequest, ShareResponse
from shared.vault.shamir import Share
from shared.vault.vault import ShareAssignment

logger = get_logger(__name__)


class ShareDeliveryResult(BaseModel):
    """Outcome of sending one share."""

    trustee_id: str
    share_index: int
    success: bool
    attempts: int
    error: str | None = None


class ShareRequestResult(BaseModel):
    """Outcome of asking one trustee for its share."""

    trustee_id: str
    status: str  # received | not_found | already_released | invalid | error | cancelled
    share: Share | None = None
    error: str | None = None


class CollectionResult(BaseModel):
    """Shares gathered by one collection round."""

    shares: list[Share]
    sufficient: bool
    results: list[ShareRequestResult]

    @property
    def responded(self) -> set[str]:
        return {r.trustee_id for r in self.results if r.share is not None}


class TrusteeClient:
    """
    HTTP client for the trustee network.

    Usage:
        client = TrusteeClient()
        results = await client.distribute(loan_id, commitment, escrowed.assignments)
        collected = await client.collect(loan_id, commitment, threshold=2)
    """

    def __init__(
        self,
        endpoints: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        distribute_timeout: float | None = None,
        distribute_attempts: int | None = None,
        backoff_base: float | None = None,
        collect_timeout: float | None = None,
        auth_token: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the client.

        Args:
            endpoints: trustee id -> base URL (defaults to TRUSTEE_ENDPOINTS)
            http_client: Shared httpx client; one is created when omitted
            distribute_timeout: Per-send timeout in seconds
            distribute_attempts: Attempts per share
            backoff_base: Exponential backoff base in seconds
            collect_timeout: Per-trustee timeout while collecting
            auth_token: Shared secret sent to trustees (defaults to TRUSTEE_AUTH_TOKEN)
            sleep: Coroutine used to wait between attempts
        """
        cfg = settings.trustee
        self.endpoints = endpoints if endpoints is not None else cfg.endpoint_map
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._distribute_timeout = distribute_timeout if distribute_timeout is not None else cfg.distribute_timeout_seconds
        self._attempts = distribute_attempts if distribute_attempts is not None else cfg.distribute_attempts
        self._backoff_base = backoff_base if backoff_base is not None else cfg.backoff_base_seconds
        self._collect_timeout = collect_timeout if collect_timeout is not None else cfg.collect_timeout_seconds
        self._sleep = sleep
        token = auth_token if auth_token is not None else cfg.auth_token.get_secret_value()
        self._headers = {TOKEN_HEADER: token} if token else {}

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _url(self, trustee_id: str, path: str) -> str:
        try:
            return f"{self.endpoints[trustee_id]}{path}"
        except KeyError:
            raise ValidationError("unknown trustee", trustee_id=trustee_id) from None

    async def _post(self, url: str, body: dict[str, Any], timeout: float) -> httpx.Response:
        try:
            response = await self._http.post(
                url, json=body, headers=self._headers, timeout=httpx.Timeout(timeout)
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError("trustee request timed out", url=url) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"trustee unreachable: {e}", url=url) from e
        if response.status_code >= 500:
            raise TransientNetworkError("trustee server error", url=url, status_code=response.status_code)
        return response

    # =========================================================================
    # Distribution
    # =========================================================================

    async def send_share(
        self,
        loan_id: int,
        activity_commitment: str,
        assignment: ShareAssignment,
    ) -> ShareDeliveryResult:
        """Send one share with timeout and exponential-backoff retries."""
        url = self._url(assignment.trustee_id, "/receive-share")
        body = ReceiveShareRequest(
            loan_id=loan_id,
            activity_commitment=activity_commitment,
            share_index=assignment.share.index,
            share_value=assignment.share.encode(),
        ).model_dump(by_alias=True)

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientNetworkError),
                stop=stop_after_attempt(self._attempts),
                wait=wait_exponential(multiplier=self._backoff_base),
                before_sleep=lambda retry_state: logger.warning(
                    "share_send_retry",
                    trustee_id=assignment.trustee_id,
                    loan_id=loan_id,
                    attempt=retry_state.attempt_number,
                ),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    response = await self._post(url, body, self._distribute_timeout)
                    if response.status_code >= 400:
                        raise ValidationError(
                            "trustee rejected share",
                            trustee_id=assignment.trustee_id,
                            status_code=response.status_code,
                        )
        except (TransientNetworkError, ValidationError) as e:
            logger.error(
                "share_send_failed",
                trustee_id=assignment.trustee_id,
                loan_id=loan_id,
                attempts=attempts,
                error=e.message,
            )
            return ShareDeliveryResult(
                trustee_id=assignment.trustee_id,
                share_index=assignment.share.index,
                success=False,
                attempts=attempts,
                error=e.message,
            )

        logger.info("share_sent", trustee_id=assignment.trustee_id, loan_id=loan_id, attempts=attempts)
        return ShareDeliveryResult(
            trustee_id=assignment.trustee_id,
            share_index=assignment.share.index,
            success=True,
            attempts=attempts,
        )

    async def distribute(
        self,
        loan_id: int,
        activity_commitment: str,
        assignments: list[ShareAssignment],
    ) -> list[ShareDeliveryResult]:
        """
        Send every share to its trustee concurrently.

        Returns:
            One result per share, in input order. Partial failure is a
            normal outcome; see ``raise_for_partial``.
        """
        results = await asyncio.gather(
            *(self.send_share(loan_id, activity_commitment, a) for a in assignments)
        )
        failed = [r.trustee_id for r in results if not r.success]
        if failed:
            logger.warning(
                "share_distribution_partial",
                loan_id=loan_id,
                delivered=len(results) - len(failed),
                failed=failed,
            )
        else:
            logger.info("share_distribution_complete", loan_id=loan_id, delivered=len(results))
        return list(results)

    @staticmethod
    def raise_for_partial(loan_id: int, results: list[ShareDeliveryResult]) -> None:
        """Raise PartialDistribution if any share was not delivered."""
        failed = [r.trustee_id for r in results if not r.success]
        if failed:
            raise PartialDistribution(
                f"{len(failed)} of {len(results)} shares undelivered",
                loan_id=loan_id,
                failed=failed,
            )

    # =========================================================================
    # Collection
    # =========================================================================

    async def request_share(
        self,
        trustee_id: str,
        loan_id: int,
        activity_commitment: str,
        reason: str = "loan_default",
    ) -> ShareRequestResult:
        """Ask one trustee for its share. Never raises for trustee-side failures."""
        body = RequestShareRequest(
            loan_id=loan_id,
            activity_commitment=activity_commitment,
            reason=reason,
        ).model_dump(by_alias=True)
        try:
            response = await self._post(self._url(trustee_id, "/request-share"), body, self._collect_timeout)
        except TransientNetworkError as e:
            logger.warning("share_request_failed", trustee_id=trustee_id, loan_id=loan_id, error=e.message)
            return ShareRequestResult(trustee_id=trustee_id, status="error", error=e.message)

        if response.status_code == 404:
            return ShareRequestResult(trustee_id=trustee_id, status="not_found")
        if response.status_code == 409:
            logger.warning("share_already_released", trustee_id=trustee_id, loan_id=loan_id)
            return ShareRequestResult(trustee_id=trustee_id, status="already_released")
        if response.status_code >= 400:
            return ShareRequestResult(
                trustee_id=trustee_id,
                status="error",
                error=f"HTTP {response.status_code}",
            )

        try:
            share = ShareResponse.model_validate(response.json()).to_share()
        except (ValueError, ValidationError) as e:
            logger.warning("share_response_invalid", trustee_id=trustee_id, loan_id=loan_id, error=str(e))
            return ShareRequestResult(trustee_id=trustee_id, status="invalid", error=str(e))

        return ShareRequestResult(trustee_id=trustee_id, status="received", share=share)

    async def collect(
        self,
        loan_id: int,
        activity_commitment: str,
        threshold: int,
        reason: str = "loan_default",
        exclude: set[str] | None = None,
    ) -> CollectionResult:
        """
        Collect shares from every trustee in parallel.

        Stops once ``threshold`` distinct shares arrived or every trustee
        answered. Requests still in flight at that point are cancelled.

        Args:
            loan_id: Loan the shares belong to
            activity_commitment: Borrower commitment on that loan
            threshold: Distinct shares wanted from this round
            reason: Release reason recorded by trustees
            exclude: Trustee ids not to ask (shares already held)

        Returns:
            CollectionResult with ``sufficient`` set when the threshold was met
        """
        targets = [tid for tid in self.endpoints if tid not in (exclude or set())]
        tasks = {
            asyncio.create_task(self.request_share(tid, loan_id, activity_commitment, reason)): tid
            for tid in targets
        }
        collected: dict[int, Share] = {}
        results: list[ShareRequestResult] = []
        pending = set(tasks)

        try:
            while pending and len(collected) < threshold:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    result = task.result()
                    results.append(result)
                    if result.share is not None:
                        collected.setdefault(result.share.index, result.share)
        finally:
            for task in pending:
                task.cancel()
                results.append(ShareRequestResult(trustee_id=tasks[task], status="cancelled"))
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        sufficient = len(collected) >= threshold
        logger.info(
            "share_collection_complete",
            loan_id=loan_id,
            collected=len(collected),
            threshold=threshold,
            sufficient=sufficient,
            asked=len(targets),
        )
        return CollectionResult(shares=list(collected.values()), sufficient=sufficient, results=results)
