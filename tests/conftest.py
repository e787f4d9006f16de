"""
Test Configuration
==================

Pytest fixtures for zkescrow tests.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

# Set test environment
os.environ["ENVIRONMENT"] = "testing"
os.environ["BLOCKCHAIN_MODE"] = "mock"
os.environ["STORE_BACKEND"] = "memory"

from shared.blockchain import MockLedgerClient  # noqa: E402
from shared.store import InMemoryStore  # noqa: E402
from shared.trustees import TrusteeClient  # noqa: E402
from shared.zk import RegisteredProofVerifier  # noqa: E402


LENDER = "0xlender"


class YieldingStore(InMemoryStore):
    """InMemoryStore that yields to the event loop before every read and write."""

    async def get(self, key: str) -> Any | None:
        await asyncio.sleep(0)
        return await super().get(key)

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        await asyncio.sleep(0)
        await super().put(key, value, ttl_seconds=ttl_seconds)


class ManualClock:
    """Wall clock the test moves by hand."""

    def __init__(self, now: int = 1000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now

    def set(self, now: int) -> None:
        self.now = now


class RoutingTransport(httpx.AsyncBaseTransport):
    """Routes requests by host to in-process ASGI apps; hosts in ``down`` are unreachable."""

    def __init__(self, routes: dict[str, httpx.AsyncBaseTransport]) -> None:
        self.routes = routes
        self.down: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.calls.append((host, request.url.path))
        if host in self.down or host not in self.routes:
            raise httpx.ConnectError(f"{host} unreachable", request=request)
        return await self.routes[host].handle_async_request(request)

    def calls_to(self, path: str) -> list[str]:
        return [host for host, p in self.calls if p == path]


@dataclass
class TrusteeNetwork:
    """Three in-process trustee services behind one routing transport."""

    transport: RoutingTransport
    stores: dict[str, InMemoryStore]
    apps: dict[str, FastAPI]
    endpoints: dict[str, str]
    http_clients: list[AsyncClient] = field(default_factory=list)

    def client(self, **overrides: Any) -> TrusteeClient:
        options = {"distribute_attempts": 3, "backoff_base": 0.0}
        options.update(overrides)
        http_client = AsyncClient(transport=self.transport)
        self.http_clients.append(http_client)
        return TrusteeClient(endpoints=self.endpoints, http_client=http_client, **options)

    def take_down(self, *trustee_ids: str) -> None:
        for trustee_id in trustee_ids:
            self.transport.down.add(_host(trustee_id))

    def bring_up(self, *trustee_ids: str) -> None:
        for trustee_id in trustee_ids:
            self.transport.down.discard(_host(trustee_id))


def _host(trustee_id: str) -> str:
    return trustee_id.replace("_", "")


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for async tests."""
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    """Manual clock starting at t=1000."""
    return ManualClock(1000)


@pytest.fixture
def verifier() -> RegisteredProofVerifier:
    return RegisteredProofVerifier()


@pytest.fixture
def ledger(clock: ManualClock, verifier: RegisteredProofVerifier) -> MockLedgerClient:
    """Fresh in-process ledger on the manual clock."""
    return MockLedgerClient(verifier=verifier, clock=clock)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest_asyncio.fixture
async def trustee_network() -> AsyncGenerator[TrusteeNetwork, None]:
    """Trustees trustee_1..trustee_3 reachable at http://trustee1..3."""
    from services.trustee.main import create_app

    stores = {}
    apps = {}
    routes: dict[str, httpx.AsyncBaseTransport] = {}
    endpoints = {}
    for i in range(1, 4):
        trustee_id = f"trustee_{i}"
        stores[trustee_id] = InMemoryStore()
        apps[trustee_id] = create_app(store=stores[trustee_id], trustee_id=trustee_id)
        routes[_host(trustee_id)] = ASGITransport(app=apps[trustee_id])
        endpoints[trustee_id] = f"http://{_host(trustee_id)}"

    network = TrusteeNetwork(
        transport=RoutingTransport(routes),
        stores=stores,
        apps=apps,
        endpoints=endpoints,
    )
    yield network

    for http_client in network.http_clients:
        await http_client.aclose()


@pytest.fixture
def trustee_app() -> FastAPI:
    """A single trustee service with its own store."""
    from services.trustee.main import create_app

    return create_app(store=InMemoryStore(), trustee_id="trustee_1")


@pytest_asyncio.fixture
async def trustee_client(trustee_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test client for a single Trustee Service."""
    async with AsyncClient(
        transport=ASGITransport(app=trustee_app),
        base_url="http://test",
    ) as client:
        yield client


class FakeWallClock:
    """Float clock for the retry queue."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest_asyncio.fixture
async def escrow(
    ledger: MockLedgerClient,
    store: InMemoryStore,
    trustee_network: TrusteeNetwork,
    wall_clock: FakeWallClock,
):
    """Escrow component graph wired to the in-process ledger and trustees."""
    from services.escrow.retry import RetryQueue
    from services.escrow.reveal import InMemoryDelivery
    from services.escrow.runtime import build_services

    return build_services(
        ledger=ledger,
        store=store,
        trustees=trustee_network.client(),
        delivery=InMemoryDelivery(),
        retry_queue=RetryQueue(store, base_delay=5.0, max_attempts=5, clock=wall_clock),
    )


IDENTITY = b'{"legal_name": "Jane Borrower", "national_id": "X1234567"}'
BORROWER_COMMITMENT = "0xactivity-borrower"


async def open_defaulted_escrow(escrow, clock: ManualClock, *, trigger_default: bool = True):
    """
    Lender offers 1000 at min score 500 for 600s; borrower applies with
    score 750 and an escrowed identity; lender approves at t=1000. When
    ``trigger_default`` is set the clock moves to 1601 and default fires.
    """
    ledger = escrow.ledger
    loan = await ledger.create_offer(
        lender=LENDER,
        amount_per_borrower=1000,
        total_slots=1,
        interest_rate_bps=500,
        repayment_period=600,
        min_required_score=500,
    )
    await ledger.register_proof("0xproof-borrower", BORROWER_COMMITMENT, 750)
    applied = await escrow.borrowers.apply_with_identity(
        loan.id,
        BORROWER_COMMITMENT,
        "0xproof-borrower",
        claimed_score=750,
        identity_payload=IDENTITY,
        threshold=2,
        total=3,
    )
    await ledger.approve_application(loan.id, BORROWER_COMMITMENT, caller=LENDER)
    if trigger_default:
        clock.set(1601)
        await ledger.check_and_trigger_default(loan.id, BORROWER_COMMITMENT)
    return loan, applied
