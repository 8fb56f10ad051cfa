"""Tests for PurchaseReconciler: passes, ledger interplay and background loops."""

import asyncio
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeBillingProvider, make_purchase
from incentivly.constants import (
    KEY_DEV_KEY,
    KEY_IS_REGISTERED,
    KEY_USER_IDENTIFIER,
    ProductType,
)
from incentivly.discovery import records_from_update
from incentivly.errors import ReportFailureReason
from incentivly.ledger import LedgerState
from incentivly.ledger_store import LedgerStore
from incentivly.provider import BillingResponseCode, ProviderError, PurchaseUpdate
from incentivly.reconciler import ConnectionState, PassSummary, PurchaseReconciler
from incentivly.reporting import ReportFailure, ReportSuccess
from incentivly.stores import MemoryStore

TRANSPORT_FAILURE = ReportFailure(ReportFailureReason.TRANSPORT_ERROR, message="offline")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _registered_store() -> MemoryStore:
    return MemoryStore({
        KEY_IS_REGISTERED: True,
        KEY_USER_IDENTIFIER: "u-1",
        KEY_DEV_KEY: "dev-key",
    })


def _scripted_reporter(script: dict[str, list] | None = None) -> MagicMock:
    """Reporter whose outcome per token is popped from ``script`` (default: success)."""
    script = script if script is not None else {}

    async def report(token, product_id, context, order_id=None):
        outcomes = script.get(token)
        if outcomes:
            return outcomes.pop(0)
        return ReportSuccess(payment_id=f"pay_{token}")

    reporter = MagicMock()
    reporter.report = AsyncMock(side_effect=report)
    return reporter


def _build(
    provider: FakeBillingProvider,
    reporter: MagicMock,
    store: MemoryStore | None = None,
) -> tuple[PurchaseReconciler, LedgerStore]:
    if store is None:
        store = _registered_store()
    ledger = LedgerStore(store)
    reconciler = PurchaseReconciler(
        provider, ledger, reporter, store, poll_interval=0.01, reconnect_delay=0.01,
    )
    return reconciler, ledger


def _reported_tokens(reporter: MagicMock) -> list[str]:
    return [c.args[0] for c in reporter.report.call_args_list]


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Single passes
# ---------------------------------------------------------------------------


class TestRunPass:
    @pytest.mark.asyncio
    async def test_success_reported_once(self, provider: FakeBillingProvider) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_A")]
        reporter = _scripted_reporter()
        reconciler, ledger = _build(provider, reporter)

        summary = await reconciler.run_pass()
        assert summary == PassSummary(discovered=1, reported=1)
        assert (await ledger.entry("tok_A")).state is LedgerState.REPORTED

        summary = await reconciler.run_pass()
        assert summary == PassSummary(discovered=1, skipped=1)
        assert reporter.report.call_count == 1

    @pytest.mark.asyncio
    async def test_context_passed_to_reporter(self, provider: FakeBillingProvider) -> None:
        provider.active[ProductType.ONE_TIME] = [make_purchase("tok_A", "coins", order_id="GPA.9")]
        reporter = _scripted_reporter()
        reconciler, _ = _build(provider, reporter)
        await reconciler.run_pass()

        call = reporter.report.call_args
        assert call.args[:2] == ("tok_A", "coins")
        context = call.args[2]
        assert (context.user_identifier, context.dev_key) == ("u-1", "dev-key")
        assert call.kwargs["order_id"] == "GPA.9"

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, provider: FakeBillingProvider) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_B")]
        reporter = _scripted_reporter({"tok_B": [TRANSPORT_FAILURE] * 4})
        reconciler, ledger = _build(provider, reporter)

        for _ in range(4):
            summary = await reconciler.run_pass()
            assert summary.failed == 1
        assert (await ledger.entry("tok_B")).attempt_count == 4

        summary = await reconciler.run_pass()
        assert summary.reported == 1
        entry = await ledger.entry("tok_B")
        assert entry.state is LedgerState.REPORTED
        assert entry.attempt_count == 4

        await reconciler.run_pass()
        assert reporter.report.call_count == 5

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, provider: FakeBillingProvider) -> None:
        provider.history[ProductType.ONE_TIME] = [make_purchase("tok_C", "coins")]
        reporter = _scripted_reporter({"tok_C": [TRANSPORT_FAILURE] * 10})
        reconciler, ledger = _build(provider, reporter)

        for _ in range(5):
            await reconciler.run_pass()
        assert reporter.report.call_count == 5
        assert await ledger.should_process("tok_C") is False

        summary = await reconciler.run_pass()
        assert summary == PassSummary(discovered=1, skipped=1)
        assert reporter.report.call_count == 5

    @pytest.mark.asyncio
    async def test_rejected_report_counts_as_attempt(self, provider: FakeBillingProvider) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_R")]
        rejected = ReportFailure(ReportFailureReason.SERVER_REJECTED, message="nope")
        reporter = _scripted_reporter({"tok_R": [rejected]})
        reconciler, ledger = _build(provider, reporter)
        await reconciler.run_pass()
        assert (await ledger.entry("tok_R")).attempt_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_reporter_exception_counts_as_attempt(
        self, provider: FakeBillingProvider,
    ) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_X"), make_purchase("tok_Y")]
        async def flaky_report(token, product_id, context, order_id=None):
            if token == "tok_X":
                raise RuntimeError("bug")
            return ReportSuccess()

        reporter = MagicMock()
        reporter.report = AsyncMock(side_effect=flaky_report)
        reconciler, ledger = _build(provider, reporter)

        summary = await reconciler.run_pass()
        assert summary.failed == 1
        assert summary.reported == 1
        assert (await ledger.entry("tok_X")).attempt_count == 1

    @pytest.mark.asyncio
    async def test_unregistered_pass_does_nothing(self, provider: FakeBillingProvider) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_A")]
        reporter = _scripted_reporter()
        reconciler, ledger = _build(provider, reporter, store=MemoryStore())

        summary = await reconciler.run_pass()
        assert summary.registered is False
        assert provider.query_calls == []
        reporter.report.assert_not_called()
        assert await ledger.should_process("tok_A") is True

    @pytest.mark.asyncio
    async def test_registered_without_dev_key_is_gated(self, provider: FakeBillingProvider) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_A")]
        store = MemoryStore({KEY_IS_REGISTERED: True, KEY_USER_IDENTIFIER: "u-1"})
        reporter = _scripted_reporter()
        reconciler, _ = _build(provider, reporter, store=store)

        summary = await reconciler.run_pass()
        assert summary.registered is False
        reporter.report.assert_not_called()

    @pytest.mark.asyncio
    async def test_same_token_active_and_history_reported_once(
        self, provider: FakeBillingProvider,
    ) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_A")]
        provider.history[ProductType.SUBSCRIPTION] = [make_purchase("tok_A")]
        reporter = _scripted_reporter()
        reconciler, _ = _build(provider, reporter)

        summary = await reconciler.run_pass()
        assert summary.discovered == 2
        assert summary.reported == 1
        assert reporter.report.call_count == 1

    @pytest.mark.asyncio
    async def test_failing_query_does_not_block_others(
        self, provider: FakeBillingProvider,
    ) -> None:
        provider.failures[("active", ProductType.SUBSCRIPTION)] = ProviderError(
            BillingResponseCode.SERVICE_DISCONNECTED,
        )
        provider.history[ProductType.ONE_TIME] = [make_purchase("tok_H", "coins")]
        reporter = _scripted_reporter()
        reconciler, _ = _build(provider, reporter)

        summary = await reconciler.run_pass()
        assert summary.reported == 1
        assert _reported_tokens(reporter) == ["tok_H"]

    @pytest.mark.asyncio
    async def test_overlapping_passes_report_token_once(
        self, provider: FakeBillingProvider,
    ) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_A")]
        release = asyncio.Event()

        async def slow_report(token, product_id, context, order_id=None):
            await release.wait()
            return ReportSuccess()

        reporter = MagicMock()
        reporter.report = AsyncMock(side_effect=slow_report)
        reconciler, _ = _build(provider, reporter)

        first = asyncio.create_task(reconciler.run_pass())
        await _wait_for(lambda: reporter.report.call_count == 1)
        second = await reconciler.run_pass()
        assert second.reported == 0
        assert second.skipped == 1

        release.set()
        assert (await first).reported == 1
        assert reporter.report.call_count == 1

    @pytest.mark.asyncio
    async def test_process_records(self, provider: FakeBillingProvider) -> None:
        reporter = _scripted_reporter()
        reconciler, ledger = _build(provider, reporter)
        update = PurchaseUpdate(BillingResponseCode.OK, [make_purchase("push_1")])
        summary = await reconciler.process_records(records_from_update(update))
        assert summary.reported == 1
        assert await ledger.should_process("push_1") is False


# ---------------------------------------------------------------------------
# Background lifecycle
# ---------------------------------------------------------------------------


class TestReconcilerLifecycle:
    @pytest.mark.asyncio
    async def test_connect_triggers_pass(self, provider: FakeBillingProvider) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_A")]
        reporter = _scripted_reporter()
        reconciler, ledger = _build(provider, reporter)
        await reconciler.start()
        try:
            await _wait_for(lambda: reporter.report.call_count >= 1)
            assert reconciler.state is ConnectionState.CONNECTED
            await asyncio.sleep(0.05)
            assert reporter.report.call_count == 1
            assert await ledger.should_process("tok_A") is False
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, provider: FakeBillingProvider) -> None:
        reconciler, _ = _build(provider, _scripted_reporter())
        await reconciler.start()
        await reconciler.start()
        try:
            await _wait_for(lambda: provider.connect_calls >= 1)
            await asyncio.sleep(0.05)
            assert provider.connect_calls == 1
            assert reconciler.is_started is True
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_everything(self, provider: FakeBillingProvider) -> None:
        reconciler, _ = _build(provider, _scripted_reporter())
        await reconciler.start()
        await _wait_for(lambda: reconciler.state is ConnectionState.CONNECTED)
        await reconciler.stop()

        assert reconciler.is_started is False
        assert reconciler.state is ConnectionState.DISCONNECTED
        assert reconciler.health()["background_tasks"] == 0

        passes = reconciler.health()["total_passes"]
        await asyncio.sleep(0.05)
        assert reconciler.health()["total_passes"] == passes

    @pytest.mark.asyncio
    async def test_stop_before_start_is_safe(self, provider: FakeBillingProvider) -> None:
        reconciler, _ = _build(provider, _scripted_reporter())
        await reconciler.stop()
        assert reconciler.is_started is False

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, provider: FakeBillingProvider) -> None:
        reconciler, _ = _build(provider, _scripted_reporter())
        await reconciler.start()
        await _wait_for(lambda: provider.connect_calls == 1)
        await reconciler.stop()
        await reconciler.start()
        try:
            await _wait_for(lambda: provider.connect_calls == 2)
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_setup_failure_retries(self, provider: FakeBillingProvider) -> None:
        provider.connect_errors = [
            ProviderError(BillingResponseCode.SERVICE_UNAVAILABLE),
            ProviderError(BillingResponseCode.BILLING_UNAVAILABLE),
        ]
        reconciler, _ = _build(provider, _scripted_reporter())
        await reconciler.start()
        try:
            await _wait_for(lambda: reconciler.state is ConnectionState.CONNECTED)
            assert provider.connect_calls == 3
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_unexpected_setup_error_retries(self, provider: FakeBillingProvider) -> None:
        provider.connect_errors = [RuntimeError("binder died")]
        reconciler, _ = _build(provider, _scripted_reporter())
        await reconciler.start()
        try:
            await _wait_for(lambda: reconciler.state is ConnectionState.CONNECTED)
            assert provider.connect_calls == 2
            await _wait_for(lambda: reconciler.health()["total_passes"] >= 1)
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_wait_disconnected_error_reconnects(
        self, provider: FakeBillingProvider,
    ) -> None:
        provider.wait_errors = [OSError("pipe closed")]
        reporter = _scripted_reporter()
        reconciler, _ = _build(provider, reporter)
        await reconciler.start()
        try:
            await _wait_for(lambda: provider.connect_calls == 2)
            await _wait_for(lambda: reconciler.state is ConnectionState.CONNECTED)
            assert reconciler.is_started is True

            provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_after")]
            await _wait_for(lambda: "tok_after" in _reported_tokens(reporter))
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_claim_and_release(self, provider: FakeBillingProvider) -> None:
        reconciler, _ = _build(provider, _scripted_reporter())
        assert reconciler.claim("tok") is True
        assert reconciler.claim("tok") is False
        assert reconciler.health()["in_flight_tokens"] == 1
        reconciler.release("tok")
        assert reconciler.claim("tok") is True

    @pytest.mark.asyncio
    async def test_reconnects_after_disconnect(self, provider: FakeBillingProvider) -> None:
        reporter = _scripted_reporter()
        reconciler, _ = _build(provider, reporter)
        await reconciler.start()
        try:
            await _wait_for(lambda: reconciler.state is ConnectionState.CONNECTED)
            provider.drop_connection()
            await _wait_for(lambda: provider.connect_calls == 2)
            await _wait_for(lambda: reconciler.state is ConnectionState.CONNECTED)

            provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_late")]
            await _wait_for(lambda: "tok_late" in _reported_tokens(reporter))
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_timer_runs_passes_while_connected(self, provider: FakeBillingProvider) -> None:
        reconciler, _ = _build(provider, _scripted_reporter())
        await reconciler.start()
        try:
            await _wait_for(lambda: reconciler.health()["total_passes"] >= 3)
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_no_passes_while_disconnected(self, provider: FakeBillingProvider) -> None:
        provider.connect_errors = [
            ProviderError(BillingResponseCode.SERVICE_UNAVAILABLE) for _ in range(1000)
        ]
        reconciler, _ = _build(provider, _scripted_reporter())
        await reconciler.start()
        try:
            await _wait_for(lambda: provider.connect_calls >= 3)
            assert reconciler.state is ConnectionState.DISCONNECTED
            assert reconciler.health()["total_passes"] == 0
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_push_update_reported(self, provider: FakeBillingProvider) -> None:
        reporter = _scripted_reporter()
        reconciler, ledger = _build(provider, reporter)
        await reconciler.start()
        try:
            await provider.updates.put(
                PurchaseUpdate(BillingResponseCode.OK, [make_purchase("push_1")]),
            )
            await _wait_for(lambda: "push_1" in _reported_tokens(reporter))
            await _wait_for(lambda: ledger.health()["reported_tokens"] == 1)
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_push_cancel_and_error_ignored(self, provider: FakeBillingProvider) -> None:
        reporter = _scripted_reporter()
        reconciler, _ = _build(provider, reporter)
        await reconciler.start()
        try:
            await provider.updates.put(PurchaseUpdate(BillingResponseCode.USER_CANCELED))
            await provider.updates.put(PurchaseUpdate(BillingResponseCode.ERROR, debug_message="x"))
            await provider.updates.put(
                PurchaseUpdate(BillingResponseCode.OK, [make_purchase("push_2")]),
            )
            await _wait_for(lambda: "push_2" in _reported_tokens(reporter))
            assert _reported_tokens(reporter) == ["push_2"]
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_unregistered_loop_never_reports(self, provider: FakeBillingProvider) -> None:
        provider.active[ProductType.SUBSCRIPTION] = [make_purchase("tok_A")]
        reporter = _scripted_reporter()
        reconciler, _ = _build(provider, reporter, store=MemoryStore())
        await reconciler.start()
        try:
            await _wait_for(lambda: reconciler.state is ConnectionState.CONNECTED)
            await asyncio.sleep(0.05)
            reporter.report.assert_not_called()
            assert provider.query_calls == []
        finally:
            await reconciler.stop()

    @pytest.mark.asyncio
    async def test_health(self, provider: FakeBillingProvider) -> None:
        reconciler, _ = _build(provider, _scripted_reporter())
        health = reconciler.health()
        assert health == {
            "started": False,
            "connection_state": "disconnected",
            "background_tasks": 0,
            "in_flight_tokens": 0,
            "total_passes": 0,
        }
