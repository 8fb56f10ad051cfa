"""Per-installation dedup ledger for purchase-token reporting.

Pure data model with no I/O. The ledger is persisted as two independent JSON
blobs: an array of reported tokens and an object of token -> failed report
attempts. ``from_json()`` degrades each corrupt blob to an empty collection
(never blocks reconciliation; the backend dedups by token as well).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum

from incentivly.constants import MAX_REPORT_ATTEMPTS
from incentivly.errors import LedgerError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# LedgerEntry
# ---------------------------------------------------------------------------


class LedgerState(str, Enum):
    UNSEEN = "unseen"
    REPORTED = "reported"


@dataclass(frozen=True)
class LedgerEntry:
    """Snapshot of one token's ledger state.

    ``attempt_count`` only matters while UNSEEN; it freezes once REPORTED.
    """

    token: str
    state: LedgerState = LedgerState.UNSEEN
    attempt_count: int = 0


# ---------------------------------------------------------------------------
# Blob parsers
# ---------------------------------------------------------------------------


def parse_reported(data: str | None) -> set[str]:
    """Parse the reported-token blob. Raises LedgerError on corrupt data."""
    if data is None:
        return set()
    try:
        obj = json.loads(data)
    except (json.JSONDecodeError, TypeError) as exc:
        raise LedgerError("reported-token blob is not valid JSON") from exc
    if not isinstance(obj, list) or not all(isinstance(t, str) for t in obj):
        raise LedgerError("reported-token blob is not a list of strings")
    return set(obj)


def parse_attempts(data: str | None) -> dict[str, int]:
    """Parse the attempt-count blob. Raises LedgerError on corrupt data."""
    if data is None:
        return {}
    try:
        obj = json.loads(data)
    except (json.JSONDecodeError, TypeError) as exc:
        raise LedgerError("attempt-count blob is not valid JSON") from exc
    if not isinstance(obj, dict):
        raise LedgerError("attempt-count blob is not an object")

    attempts: dict[str, int] = {}
    for token, count in obj.items():
        # bool is an int subclass; reject it along with floats and strings
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise LedgerError(f"invalid attempt count for token {token!r}")
        attempts[token] = count
    return attempts


# ---------------------------------------------------------------------------
# TransactionLedger
# ---------------------------------------------------------------------------


@dataclass
class TransactionLedger:
    """Which purchase tokens were reported, and failed attempts for the rest.

    ``mark_reported()`` and ``add_attempt()`` return True when they changed
    state (i.e. the caller needs to persist), False for no-ops.
    """

    reported: set[str] = field(default_factory=set)
    attempts: dict[str, int] = field(default_factory=dict)
    max_attempts: int = MAX_REPORT_ATTEMPTS

    # -- queries --------------------------------------------------------------

    def is_reported(self, token: str) -> bool:
        return token in self.reported

    def attempt_count(self, token: str) -> int:
        return self.attempts.get(token, 0)

    def should_process(self, token: str) -> bool:
        """True iff the token is not reported and has attempts left."""
        return (
            token not in self.reported
            and self.attempts.get(token, 0) < self.max_attempts
        )

    def entry(self, token: str) -> LedgerEntry:
        state = LedgerState.REPORTED if token in self.reported else LedgerState.UNSEEN
        return LedgerEntry(
            token=token, state=state, attempt_count=self.attempts.get(token, 0),
        )

    def is_exhausted(self, token: str) -> bool:
        """True for unreported tokens that hit the attempt ceiling."""
        return (
            token not in self.reported
            and self.attempts.get(token, 0) >= self.max_attempts
        )

    # -- mutations ------------------------------------------------------------

    def mark_reported(self, token: str) -> bool:
        """Mark ``token`` REPORTED (terminal). Its attempt count is frozen."""
        if token in self.reported:
            return False
        self.reported.add(token)
        return True

    def add_attempt(self, token: str) -> bool:
        """Count a failed report. No-op once the token is REPORTED."""
        if token in self.reported:
            return False
        self.attempts[token] = self.attempts.get(token, 0) + 1
        return True

    # -- serialization --------------------------------------------------------

    def reported_to_json(self) -> str:
        return json.dumps(sorted(self.reported))

    def attempts_to_json(self) -> str:
        return json.dumps(dict(sorted(self.attempts.items())))

    @classmethod
    def from_json(
        cls,
        reported_json: str | None,
        attempts_json: str | None,
        max_attempts: int = MAX_REPORT_ATTEMPTS,
    ) -> TransactionLedger:
        """Rebuild from the two persisted blobs.

        Each blob is parsed independently; a corrupt blob is logged and
        replaced by an empty collection.
        """
        try:
            reported = parse_reported(reported_json)
        except LedgerError as exc:
            logger.warning("Reported-token data is corrupt (%s); starting empty.", exc)
            reported = set()

        try:
            attempts = parse_attempts(attempts_json)
        except LedgerError as exc:
            logger.warning("Attempt-count data is corrupt (%s); starting empty.", exc)
            attempts = {}

        return cls(reported=reported, attempts=attempts, max_attempts=max_attempts)
