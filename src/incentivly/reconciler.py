"""Reconciliation loop: discovery -> ledger filter -> report -> ledger update.

Three background tasks drive reconciliation passes for the lifetime of the
reconciler:

- the connection task keeps the provider connected, reconnecting after a
  fixed delay forever, and runs a pass on every (re)connect;
- the timer task starts a pass every ``poll_interval`` seconds while
  connected, without waiting for earlier passes;
- the push task feeds provider purchase updates into the same per-record
  pipeline.

Per-token work is independent: a failure is recorded on the ledger and
logged, and never stops the loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Iterable

from incentivly.constants import POLL_INTERVAL_SECS, RECONNECT_DELAY_SECS
from incentivly.discovery import discover_purchases, records_from_update
from incentivly.errors import RegistrationError
from incentivly.provider import ProviderError
from incentivly.registration import RegistrationContext, load_registration, require_identity
from incentivly.reporting import ReportSuccess

if TYPE_CHECKING:
    from incentivly.ledger_store import LedgerStore
    from incentivly.provider import BillingProvider
    from incentivly.purchase import PurchaseRecord
    from incentivly.reporting import PaymentReporter
    from incentivly.store import Store

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class RecordOutcome(str, Enum):
    REPORTED = "reported"
    FAILED = "failed"
    SKIPPED = "skipped"  # ledger says reported or out of attempts
    IN_FLIGHT = "in_flight"  # another task is already reporting this token


@dataclass(frozen=True)
class PassSummary:
    """Counts for one reconciliation pass."""

    registered: bool = True
    discovered: int = 0
    reported: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[RecordOutcome]) -> PassSummary:
        outcomes = list(outcomes)
        return cls(
            discovered=len(outcomes),
            reported=outcomes.count(RecordOutcome.REPORTED),
            failed=outcomes.count(RecordOutcome.FAILED),
            skipped=len(outcomes)
            - outcomes.count(RecordOutcome.REPORTED)
            - outcomes.count(RecordOutcome.FAILED),
        )


class PurchaseReconciler:
    """Keeps the provider's purchases and the backend ledger in sync.

    - ``start()`` launches the background tasks; a second call is a no-op.
    - ``stop()`` cancels every owned task (timer sleeps, provider queries,
      report calls in flight) and waits for them to finish.
    - ``run_pass()`` runs one pass to completion; the timer uses it too.
    """

    def __init__(
        self,
        provider: BillingProvider,
        ledger: LedgerStore,
        reporter: PaymentReporter,
        store: Store,
        poll_interval: float = POLL_INTERVAL_SECS,
        reconnect_delay: float = RECONNECT_DELAY_SECS,
    ) -> None:
        self._provider = provider
        self._ledger = ledger
        self._reporter = reporter
        self._store = store
        self._poll_interval = poll_interval
        self._reconnect_delay = reconnect_delay
        self._state = ConnectionState.DISCONNECTED
        self._started = False
        self._tasks: set[asyncio.Task[object]] = set()
        self._in_flight: set[str] = set()
        self._total_passes = 0

    # -- lifecycle ------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start connection, timer and push tasks. Idempotent."""
        if self._started:
            logger.info("Purchase monitoring already started, skipping.")
            return
        self._started = True
        self._spawn(self._connection_loop(), "connection")
        self._spawn(self._timer_loop(), "timer")
        self._spawn(self._updates_loop(), "purchase-updates")
        logger.info("Purchase monitoring started.")

    async def stop(self) -> None:
        """Cancel all background work and wait for it to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._in_flight.clear()
        self._state = ConnectionState.DISCONNECTED
        if self._started:
            logger.info("Purchase monitoring stopped.")
        self._started = False

    def _spawn(self, coro: Awaitable[object], name: str) -> asyncio.Task[object]:
        task = asyncio.ensure_future(coro)
        task.set_name(f"incentivly-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %r", task.get_name(), exc,
                exc_info=exc,
            )

    # -- background loops -----------------------------------------------------

    async def _connection_loop(self) -> None:
        """Connect, run a pass, wait for disconnect, back off, repeat forever."""
        while True:
            try:
                await self._provider.connect()
            except ProviderError as e:
                logger.error(
                    "Billing setup failed: %s; retrying in %.1fs.", e, self._reconnect_delay,
                )
                await asyncio.sleep(self._reconnect_delay)
                continue
            except Exception:
                logger.exception(
                    "Billing setup raised unexpectedly; retrying in %.1fs.",
                    self._reconnect_delay,
                )
                await asyncio.sleep(self._reconnect_delay)
                continue

            self._state = ConnectionState.CONNECTED
            logger.info("Billing provider connected.")
            self._spawn(self._guarded_pass(), "pass")

            try:
                await self._provider.wait_disconnected()
            except Exception:
                # treated as a lost connection
                logger.exception("Waiting on the billing connection failed.")
            finally:
                self._state = ConnectionState.DISCONNECTED
            logger.warning(
                "Billing provider disconnected; reconnecting in %.1fs.",
                self._reconnect_delay,
            )
            await asyncio.sleep(self._reconnect_delay)

    async def _timer_loop(self) -> None:
        """Start a pass every poll interval while connected."""
        while True:
            await asyncio.sleep(self._poll_interval)
            if self._state is ConnectionState.CONNECTED:
                self._spawn(self._guarded_pass(), "pass")

    async def _updates_loop(self) -> None:
        """Feed pushed purchases into the pipeline; resubscribe on failure."""
        while True:
            try:
                async for update in self._provider.purchase_updates():
                    records = records_from_update(update)
                    if records:
                        self._spawn(self.process_records(records), "push")
            except Exception:
                logger.exception("Purchase update channel failed.")
            await asyncio.sleep(self._reconnect_delay)

    async def _guarded_pass(self) -> None:
        try:
            await self.run_pass()
        except Exception:
            logger.exception("Reconciliation pass failed.")

    # -- passes ---------------------------------------------------------------

    async def _reporting_context(self) -> RegistrationContext | None:
        """Registration context for this pass, or None when reporting is gated off."""
        context = await load_registration(self._store)
        if not context.is_registered:
            return None
        try:
            require_identity(context)
        except RegistrationError as e:
            logger.warning("Registered but identity incomplete: %s", e)
            return None
        return context

    async def run_pass(self) -> PassSummary:
        """Discover all purchases and report the ones the ledger lets through.

        A no-op while the installation is not registered.
        """
        context = await self._reporting_context()
        if context is None:
            logger.debug("Skipping reconciliation pass: user not registered.")
            return PassSummary(registered=False)

        self._total_passes += 1
        tasks: list[asyncio.Task[RecordOutcome]] = []
        try:
            async for record in discover_purchases(self._provider):
                tasks.append(asyncio.ensure_future(self._process_record(record, context)))
            outcomes = await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        summary = PassSummary.from_outcomes(outcomes)
        if summary.reported or summary.failed:
            logger.info(
                "Reconciliation pass: %d discovered, %d reported, %d failed, %d skipped.",
                summary.discovered, summary.reported, summary.failed, summary.skipped,
            )
        return summary

    async def process_records(self, records: Iterable[PurchaseRecord]) -> PassSummary:
        """Run pushed records through the same filter-and-report pipeline."""
        context = await self._reporting_context()
        if context is None:
            return PassSummary(registered=False)
        outcomes = await asyncio.gather(
            *(self._process_record(record, context) for record in records)
        )
        return PassSummary.from_outcomes(outcomes)

    async def _process_record(
        self, record: PurchaseRecord, context: RegistrationContext,
    ) -> RecordOutcome:
        token = record.token
        if not self.claim(token):
            return RecordOutcome.IN_FLIGHT
        try:
            if not await self._ledger.should_process(token):
                return RecordOutcome.SKIPPED

            logger.info(
                "Processing purchase: %s (token: %s, time: %d, source: %s)",
                record.product_id, token, record.purchase_time_millis,
                record.source.value,
            )
            try:
                outcome = await self._reporter.report(
                    token, record.product_id, context, order_id=record.order_id,
                )
            except Exception:
                logger.exception("Unexpected error reporting purchase %s.", token)
                await self._ledger.add_attempt(token)
                return RecordOutcome.FAILED

            if isinstance(outcome, ReportSuccess):
                await self._ledger.mark_reported(token)
                return RecordOutcome.REPORTED
            await self._ledger.add_attempt(token)
            return RecordOutcome.FAILED
        finally:
            self.release(token)

    # -- in-flight claims -----------------------------------------------------

    def claim(self, token: str) -> bool:
        """Reserve ``token`` for one report. False if a report is already running.

        Shared by passes, pushed updates and manual reports so a token never
        has two report calls in flight at once.
        """
        if token in self._in_flight:
            return False
        self._in_flight.add(token)
        return True

    def release(self, token: str) -> None:
        self._in_flight.discard(token)

    # -- monitoring -----------------------------------------------------------

    def health(self) -> dict[str, object]:
        return {
            "started": self._started,
            "connection_state": self._state.value,
            "background_tasks": len(self._tasks),
            "in_flight_tokens": len(self._in_flight),
            "total_passes": self._total_passes,
        }
