"""
Event Watcher
=============

Single polling loop over the escrow ledger.

Each round:
- sweeps approved applications past their deadline and triggers the
  default (enforcement is permissionless, so the service does it too)
- reads events between the stored position and the current head and
  dispatches them by type. A default becomes a durable reveal job in
  the retry queue (written before the position moves) and a notice on
  the in-process reveal queue; a recorded reveal is checked against
  the local Reveal Record

The position only advances after a round completes, so a crash replays
the round and handlers must tolerate seeing an event twice.

Version: 0.1.0
"""

import asyncio
from collections.abc import Awaitable, Callable

from shared.blockchain.client import (
    ApplicationStatus,
    LedgerClient,
    LedgerEvent,
    LedgerEventType,
    LoanState,
)
from shared.config import settings
from shared.errors import StateConflict
from shared.logging import get_logger
from shared.store import KeyValueStore

from services.escrow.retry import JobType, RetryQueue
from services.escrow.reveal import DefaultNotice, escrow_key, reveal_job_id

logger = get_logger(__name__)

EventHandler = Callable[[LedgerEvent], Awaitable[None]]


class EventWatcher:
    """
    Polls the ledger and emits typed notices.

    Usage:
        queue: asyncio.Queue[DefaultNotice] = asyncio.Queue()
        watcher = EventWatcher(ledger, store, queue, retry_queue=retry_queue)
        watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: KeyValueStore,
        queue: "asyncio.Queue[DefaultNotice]",
        poll_interval: float | None = None,
        position_key: str | None = None,
        enforce_defaults: bool = True,
        retry_queue: RetryQueue | None = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.queue = queue
        self.retry_queue = retry_queue
        self.poll_interval = poll_interval if poll_interval is not None else settings.watcher.poll_interval_seconds
        self.position_key = position_key or settings.watcher.position_key
        self.enforce_defaults = enforce_defaults
        self._task: asyncio.Task[None] | None = None
        self._handlers: dict[LedgerEventType, EventHandler] = {
            LedgerEventType.LOAN_DEFAULTED: self._on_loan_defaulted,
            LedgerEventType.IDENTITY_REVEALED: self._on_identity_revealed,
        }

    def on(self, event_type: LedgerEventType, handler: EventHandler) -> None:
        """Register (or replace) the handler for an event type."""
        self._handlers[event_type] = handler

    async def get_position(self) -> int:
        position = await self.store.get(self.position_key)
        return int(position) if position is not None else 0

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_loan_defaulted(self, event: LedgerEvent) -> None:
        if not event.activity_commitment:
            logger.error("default_event_without_commitment", loan_id=event.loan_id, block=event.block_number)
            return
        if self.retry_queue is not None:
            await self.retry_queue.enqueue(
                JobType.REVEAL,
                {"loan_id": event.loan_id, "activity_commitment": event.activity_commitment},
                job_id=reveal_job_id(event.loan_id, event.activity_commitment),
                delay=0,
            )
        await self.queue.put(
            DefaultNotice(
                loan_id=event.loan_id,
                activity_commitment=event.activity_commitment,
                block_number=event.block_number,
            )
        )
        logger.info(
            "default_detected",
            loan_id=event.loan_id,
            activity_commitment=event.activity_commitment,
            block=event.block_number,
        )

    async def _on_identity_revealed(self, event: LedgerEvent) -> None:
        logger.info(
            "identity_reveal_recorded",
            loan_id=event.loan_id,
            activity_commitment=event.activity_commitment,
            lender=event.data.get("lender"),
            block=event.block_number,
        )
        if not event.activity_commitment:
            return
        if await self.store.get(f"reveal:{escrow_key(event.loan_id, event.activity_commitment)}") is None:
            # Recorded on the ledger by some other coordinator.
            logger.warning(
                "identity_revealed_without_local_record",
                loan_id=event.loan_id,
                activity_commitment=event.activity_commitment,
            )

    async def dispatch(self, event: LedgerEvent) -> None:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.debug("ledger_event_ignored", event_type=event.event_type.value, block=event.block_number)
            return
        await handler(event)

    # =========================================================================
    # Polling
    # =========================================================================

    async def sweep_overdue(self) -> int:
        """
        Trigger defaults for approved applications past their deadline.

        Returns:
            Number of defaults triggered
        """
        now = await self.ledger.now()
        triggered = 0
        for loan in await self.ledger.list_loans():
            # A Defaulted loan can still hold approved slots that come due later.
            if loan.state in (LoanState.PENDING, LoanState.PAID):
                continue
            for application in await self.ledger.list_applications(loan.id):
                if application.status != ApplicationStatus.APPROVED:
                    continue
                if application.repayment_deadline is None or now <= application.repayment_deadline:
                    continue
                try:
                    outcome = await self.ledger.check_and_trigger_default(loan.id, application.activity_commitment)
                except StateConflict as e:
                    # Repaid or defaulted by someone else since the read.
                    logger.debug("overdue_sweep_skipped", loan_id=loan.id, reason=e.code)
                    continue
                if outcome.triggered:
                    triggered += 1
        return triggered

    async def poll_once(self) -> int:
        """
        Run one polling round.

        Returns:
            Number of events dispatched
        """
        if self.enforce_defaults:
            await self.sweep_overdue()

        position = await self.get_position()
        head = await self.ledger.get_head()
        if head <= position:
            return 0

        events = await self.ledger.get_events(position, head)
        for event in events:
            await self.dispatch(event)

        await self.store.put(self.position_key, head)
        logger.debug("watcher_round_complete", from_block=position, to_block=head, events=len(events))
        return len(events)

    async def run(self) -> None:
        """Poll until cancelled. A failed round is logged and retried next tick."""
        logger.info("event_watcher_started", poll_interval=self.poll_interval)
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("watcher_poll_failed", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("event_watcher_stopped")
