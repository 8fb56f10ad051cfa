"""Write-through persistence and locking around the TransactionLedger.

The in-memory ledger is the hot path for every ``should_process`` check.
The Store is the durable copy and is updated before any mutation returns,
because the host process may be killed at any time.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from incentivly.constants import (
    KEY_PROCESSED_TRANSACTIONS,
    KEY_REPORT_ATTEMPTS,
    MAX_REPORT_ATTEMPTS,
)
from incentivly.ledger import LedgerEntry, TransactionLedger

if TYPE_CHECKING:
    from incentivly.store import Store

logger = logging.getLogger(__name__)


class LedgerStore:
    """Dedup ledger with lazy load and write-through flush.

    - The ledger is loaded from the Store on first use.
    - ``mark_reported()`` / ``add_attempt()`` mutate and flush under one
      ``asyncio.Lock``, so read-modify-write on a token is atomic with
      respect to every other ledger operation.
    - Only the blob a mutation touched is rewritten.
    - A failed flush is retried, then logged; the mutation stays in memory
      and the call returns False.
    """

    def __init__(
        self,
        store: Store,
        max_attempts: int = MAX_REPORT_ATTEMPTS,
        flush_retries: int = 1,
        flush_retry_delay: float = 0.5,
    ) -> None:
        self._store = store
        self._max_attempts = max_attempts
        self._flush_retries = flush_retries
        self._flush_retry_delay = flush_retry_delay
        self._ledger: TransactionLedger | None = None
        self._lock = asyncio.Lock()
        self._last_flush_at: str | None = None
        self._total_flushes: int = 0
        self._failed_flushes: int = 0

    async def _load(self) -> TransactionLedger:
        """Return the ledger, loading it from the Store on first call.

        Must be called with ``self._lock`` held.
        """
        if self._ledger is not None:
            return self._ledger

        try:
            reported_json = await self._store.get_string(KEY_PROCESSED_TRANSACTIONS)
            attempts_json = await self._store.get_string(KEY_REPORT_ATTEMPTS)
        except Exception:
            logger.warning("Failed to load ledger from store; starting empty.")
            reported_json = attempts_json = None

        self._ledger = TransactionLedger.from_json(
            reported_json, attempts_json, max_attempts=self._max_attempts,
        )
        logger.debug(
            "Ledger loaded: %d reported, %d with attempts.",
            len(self._ledger.reported), len(self._ledger.attempts),
        )
        return self._ledger

    async def get(self) -> TransactionLedger:
        """Return the loaded ledger (read-only use)."""
        async with self._lock:
            return await self._load()

    # -- queries --------------------------------------------------------------

    async def should_process(self, token: str) -> bool:
        async with self._lock:
            ledger = await self._load()
            return ledger.should_process(token)

    async def entry(self, token: str) -> LedgerEntry:
        async with self._lock:
            ledger = await self._load()
            return ledger.entry(token)

    # -- mutations ------------------------------------------------------------

    async def mark_reported(self, token: str) -> bool:
        """Mark ``token`` REPORTED and persist. Idempotent.

        Returns True once the state is durable (including the no-op case),
        False if the flush failed.
        """
        async with self._lock:
            ledger = await self._load()
            if not ledger.mark_reported(token):
                return True
            logger.info("Processed transaction (token: %s) saved to storage.", token)
            return await self._flush(KEY_PROCESSED_TRANSACTIONS, ledger.reported_to_json())

    async def add_attempt(self, token: str) -> bool:
        """Count one failed report for ``token`` and persist.

        No-op for REPORTED tokens. Returns False if the flush failed.
        """
        async with self._lock:
            ledger = await self._load()
            if not ledger.add_attempt(token):
                return True
            logger.info(
                "Increased transaction report attempts count to %d for token: %s",
                ledger.attempt_count(token), token,
            )
            return await self._flush(KEY_REPORT_ATTEMPTS, ledger.attempts_to_json())

    async def _flush(self, key: str, blob: str) -> bool:
        """Write one blob to the Store with retry. Returns True on success."""
        max_tries = 1 + self._flush_retries
        for attempt in range(max_tries):
            try:
                await self._store.set_string(key, blob)
                self._last_flush_at = datetime.now(timezone.utc).isoformat()
                self._total_flushes += 1
                return True
            except Exception:
                if attempt < max_tries - 1:
                    logger.warning(
                        "Ledger flush attempt %d/%d failed for %s, retrying in %.1fs...",
                        attempt + 1, max_tries, key, self._flush_retry_delay,
                    )
                    await asyncio.sleep(self._flush_retry_delay)
                else:
                    logger.error(
                        "Failed to persist %s after %d attempt(s); "
                        "change is in memory only.",
                        key, max_tries,
                    )
        self._failed_flushes += 1
        return False

    # -- monitoring -----------------------------------------------------------

    def health(self) -> dict[str, object]:
        """Return ledger health metrics for diagnostics."""
        ledger = self._ledger
        if ledger is None:
            loaded = False
            reported = pending = exhausted = 0
        else:
            loaded = True
            reported = len(ledger.reported)
            unreported = [t for t in ledger.attempts if t not in ledger.reported]
            exhausted = sum(1 for t in unreported if ledger.is_exhausted(t))
            pending = len(unreported) - exhausted
        return {
            "loaded": loaded,
            "reported_tokens": reported,
            "retrying_tokens": pending,
            "exhausted_tokens": exhausted,
            "max_attempts": self._max_attempts,
            "last_flush_at": self._last_flush_at,
            "total_flushes": self._total_flushes,
            "failed_flushes": self._failed_flushes,
            "flush_retries": self._flush_retries,
        }
