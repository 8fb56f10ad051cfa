"""Shared fixtures: an in-memory billing provider and SDK log gating."""

import asyncio
from typing import Any

import pytest

from incentivly.constants import ProductType
from incentivly.provider import PurchaseUpdate
from incentivly.sdk_logging import set_logging_enabled


def make_purchase(
    token: str,
    product_id: str = "premium_monthly",
    purchase_time: int = 1_700_000_000_000,
    order_id: str | None = "GPA.1234-5678",
) -> dict[str, Any]:
    """Raw provider JSON for one purchase."""
    data: dict[str, Any] = {
        "purchaseToken": token,
        "productIds": [product_id],
        "purchaseTime": purchase_time,
    }
    if order_id is not None:
        data["orderId"] = order_id
    return data


class FakeBillingProvider:
    """BillingProvider double with scriptable purchases, failures and pushes."""

    def __init__(self) -> None:
        self.active: dict[ProductType, list[dict[str, Any]]] = {}
        self.history: dict[ProductType, list[dict[str, Any]]] = {}
        self.failures: dict[tuple[str, ProductType], Exception] = {}
        self.connect_errors: list[Exception] = []
        self.wait_errors: list[Exception] = []
        self.connect_calls = 0
        self.query_calls: list[tuple[str, ProductType]] = []
        self.updates: asyncio.Queue[PurchaseUpdate] = asyncio.Queue()
        self._disconnected = asyncio.Event()

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self._disconnected.clear()

    async def wait_disconnected(self) -> None:
        if self.wait_errors:
            raise self.wait_errors.pop(0)
        await self._disconnected.wait()

    def drop_connection(self) -> None:
        self._disconnected.set()

    async def query_purchases(self, product_type: ProductType) -> list[dict[str, Any]]:
        return self._query("active", product_type, self.active)

    async def query_purchase_history(self, product_type: ProductType) -> list[dict[str, Any]]:
        return self._query("history", product_type, self.history)

    def _query(self, kind, product_type, source):
        self.query_calls.append((kind, product_type))
        error = self.failures.get((kind, product_type))
        if error is not None:
            raise error
        return list(source.get(product_type, []))

    async def purchase_updates(self):
        while True:
            yield await self.updates.get()


@pytest.fixture()
def provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture()
def sdk_logging():
    """Enable SDK logging for the duration of a test (for caplog assertions)."""
    set_logging_enabled(True)
    yield
    set_logging_enabled(False)
