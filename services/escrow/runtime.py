"""
Escrow Runtime
==============

Wires the escrow components around one store, one ledger client and
one reveal queue.

Version: 0.1.0
"""

import asyncio
from dataclasses import dataclass, field

from shared.blockchain.client import LedgerClient, get_ledger_client
from shared.commitments import CommitmentRegistry
from shared.logging import get_logger
from shared.store import KeyValueStore, get_store
from shared.trustees import TrusteeClient
from shared.vault import KeyValueBlobStore, SecretVault

from services.escrow.borrower import BorrowerEscrow
from services.escrow.retry import RetryQueue
from services.escrow.reveal import DefaultNotice, IdentityDelivery, RevealCoordinator, StoreDelivery
from services.escrow.watcher import EventWatcher

logger = get_logger(__name__)


@dataclass
class EscrowServices:
    """Component graph of the escrow service."""

    ledger: LedgerClient
    store: KeyValueStore
    registry: CommitmentRegistry
    vault: SecretVault
    trustees: TrusteeClient
    retry_queue: RetryQueue
    coordinator: RevealCoordinator
    borrowers: BorrowerEscrow
    watcher: EventWatcher
    notices: "asyncio.Queue[DefaultNotice]"
    tasks: list[asyncio.Task[None]] = field(default_factory=list)

    def start(self) -> None:
        """Start the watcher, the reveal consumer and the retry loop."""
        self.tasks = [
            self.watcher.start(),
            asyncio.create_task(self.coordinator.run(self.notices)),
            asyncio.create_task(self.retry_queue.run()),
        ]
        logger.info("escrow_background_started", tasks=len(self.tasks))

    async def stop(self) -> None:
        await self.watcher.stop()
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []
        await self.trustees.close()
        await self.store.close()
        logger.info("escrow_background_stopped")


def build_services(
    ledger: LedgerClient | None = None,
    store: KeyValueStore | None = None,
    trustees: TrusteeClient | None = None,
    delivery: IdentityDelivery | None = None,
    vault: SecretVault | None = None,
    retry_queue: RetryQueue | None = None,
) -> EscrowServices:
    """
    Assemble the escrow components.

    Anything not supplied is built from settings.
    """
    if store is None:
        store = get_store()
    if ledger is None:
        ledger = get_ledger_client()
    if trustees is None:
        trustees = TrusteeClient()
    if vault is None:
        vault = SecretVault(KeyValueBlobStore(store))
    if retry_queue is None:
        retry_queue = RetryQueue(store)
    if delivery is None:
        delivery = StoreDelivery(store)
    notices: asyncio.Queue[DefaultNotice] = asyncio.Queue()

    coordinator = RevealCoordinator(
        ledger=ledger,
        trustees=trustees,
        vault=vault,
        store=store,
        delivery=delivery,
        retry_queue=retry_queue,
    )
    return EscrowServices(
        ledger=ledger,
        store=store,
        registry=CommitmentRegistry(store),
        vault=vault,
        trustees=trustees,
        retry_queue=retry_queue,
        coordinator=coordinator,
        borrowers=BorrowerEscrow(ledger, vault, trustees, retry_queue),
        watcher=EventWatcher(ledger, store, notices, retry_queue=retry_queue),
        notices=notices,
    )
