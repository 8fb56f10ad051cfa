"""Tunables for one IncentivlySDK instance.

Every field has a production default; tests shorten the intervals. Nothing
is read from the environment.
"""

from dataclasses import dataclass

from incentivly.constants import (
    DEFAULT_BASE_URL,
    MAX_REPORT_ATTEMPTS,
    POLL_INTERVAL_SECS,
    RECONNECT_DELAY_SECS,
)


@dataclass(frozen=True)
class IncentivlyConfig:
    base_url: str = DEFAULT_BASE_URL
    poll_interval_secs: float = POLL_INTERVAL_SECS
    reconnect_delay_secs: float = RECONNECT_DELAY_SECS
    max_report_attempts: int = MAX_REPORT_ATTEMPTS
    connect_timeout_secs: float = 30.0
    read_timeout_secs: float = 60.0
    ledger_flush_retries: int = 1
    ledger_flush_retry_delay: float = 0.5
    logging_enabled: bool = False
