"""IncentivlySDK — the host-owned context object tying the SDK together.

One instance per installation. The host constructs it with a config, a
Store and a BillingProvider, starts it inside its event loop and stops it
on shutdown (or uses it as an async context manager).
"""

from __future__ import annotations

import importlib.metadata
import logging
import platform
from typing import Any

from incentivly.api_client import (
    IncentivlyClient,
    PaymentReportResponse,
    UpdateUserIdentifierResponse,
    UserRegistrationResponse,
)
from incentivly.config import IncentivlyConfig
from incentivly.constants import KEY_IS_REGISTERED, KEY_USER_IDENTIFIER
from incentivly.errors import ReportError, ReportFailureReason
from incentivly.ledger_store import LedgerStore
from incentivly.provider import BillingProvider
from incentivly.reconciler import PurchaseReconciler
from incentivly.registration import (
    load_registration,
    register_user,
    require_identity,
    update_user_identifier,
)
from incentivly.reporting import PaymentReporter, ReportSuccess
from incentivly.sdk_logging import set_logging_enabled
from incentivly.store import Store

logger = logging.getLogger(__name__)


class IncentivlySDK:
    """Revenue-sharing SDK bound to one installation's store and provider.

    ``client`` may be injected (tests, custom transports); otherwise one is
    built from ``config`` and closed by ``aclose()``.
    """

    def __init__(
        self,
        config: IncentivlyConfig,
        store: Store,
        provider: BillingProvider,
        client: IncentivlyClient | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._owns_client = client is None
        self._client = client or IncentivlyClient(
            base_url=config.base_url,
            connect_timeout=config.connect_timeout_secs,
            read_timeout=config.read_timeout_secs,
        )
        self._reporter = PaymentReporter(self._client)
        self._ledger = LedgerStore(
            store,
            max_attempts=config.max_report_attempts,
            flush_retries=config.ledger_flush_retries,
            flush_retry_delay=config.ledger_flush_retry_delay,
        )
        self._reconciler = PurchaseReconciler(
            provider,
            self._ledger,
            self._reporter,
            store,
            poll_interval=config.poll_interval_secs,
            reconnect_delay=config.reconnect_delay_secs,
        )
        set_logging_enabled(config.logging_enabled)

    @property
    def ledger(self) -> LedgerStore:
        return self._ledger

    @property
    def reconciler(self) -> PurchaseReconciler:
        return self._reconciler

    # -- lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Begin purchase monitoring. Calling twice is a no-op."""
        await self._reconciler.start()

    async def stop(self) -> None:
        await self._reconciler.stop()

    async def aclose(self) -> None:
        """Stop monitoring and release the HTTP client if the SDK built it."""
        await self.stop()
        if self._owns_client:
            await self._client.close()

    async def __aenter__(self) -> IncentivlySDK:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def set_logging_enabled(self, enabled: bool) -> None:
        set_logging_enabled(enabled)

    # -- registration ---------------------------------------------------------

    async def register_user(
        self, dev_key: str, user_identifier: str | None = None,
    ) -> UserRegistrationResponse:
        return await register_user(self._client, self._store, dev_key, user_identifier)

    async def update_user_identifier(
        self, new_user_identifier: str,
    ) -> UpdateUserIdentifierResponse:
        return await update_user_identifier(self._client, self._store, new_user_identifier)

    async def get_user_identifier(self) -> str | None:
        return await self._store.get_string(KEY_USER_IDENTIFIER)

    async def is_user_registered(self) -> bool:
        return await self._store.get_bool(KEY_IS_REGISTERED, False)

    # -- payment reporting ----------------------------------------------------

    async def report_payment(
        self,
        product_id: str,
        purchase_token: str,
        order_id: str | None = None,
    ) -> PaymentReportResponse:
        """Report one purchase outside the reconciliation loop.

        Raises RegistrationError when identity is missing, and ReportError
        when the ledger has already settled the token, a pass is reporting
        it right now, or the report fails.
        The ledger is updated either way, so the loop will not repeat a
        successful manual report.
        """
        context = await load_registration(self._store)
        require_identity(context)

        if not self._reconciler.claim(purchase_token):
            raise ReportError(
                ReportFailureReason.ALREADY_PROCESSED,
                message="This transaction is already being reported.",
            )
        try:
            if not await self._ledger.should_process(purchase_token):
                raise ReportError(
                    ReportFailureReason.ALREADY_PROCESSED,
                    message="This transaction has already been processed.",
                )

            outcome = await self._reporter.report(
                purchase_token, product_id, context, order_id=order_id,
            )
            if isinstance(outcome, ReportSuccess):
                await self._ledger.mark_reported(purchase_token)
                return PaymentReportResponse(success=True, payment_id=outcome.payment_id)

            await self._ledger.add_attempt(purchase_token)
            raise outcome.to_error()
        finally:
            self._reconciler.release(purchase_token)

    # -- diagnostics ----------------------------------------------------------

    async def status(self) -> dict[str, Any]:
        """Report configuration, registration, loop and ledger state.

        Never exposes the dev key itself, only whether one is stored.
        """
        context = await load_registration(self._store)

        versions: dict[str, str] = {"python": platform.python_version()}
        for pkg in ("incentivly-sdk", "httpx"):
            try:
                versions[pkg.replace("-", "_")] = importlib.metadata.version(pkg)
            except importlib.metadata.PackageNotFoundError:
                versions[pkg.replace("-", "_")] = "unknown"

        await self._ledger.get()
        return {
            "base_url": self._client.base_url,
            "versions": versions,
            "registration": {
                "is_registered": context.is_registered,
                "user_identifier": context.user_identifier,
                "dev_key_status": "present" if context.dev_key else "missing",
            },
            "reconciler": self._reconciler.health(),
            "ledger": self._ledger.health(),
            "config": {
                "poll_interval_secs": self._config.poll_interval_secs,
                "reconnect_delay_secs": self._config.reconnect_delay_secs,
                "max_report_attempts": self._config.max_report_attempts,
            },
        }
