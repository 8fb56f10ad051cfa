"""Billing provider interface consumed by discovery and the reconciler.

The provider is the host's bridge to the platform billing library. Its
callback APIs are expressed here as coroutines, and its "purchases
updated" listener as an async iterator of ``PurchaseUpdate`` messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from incentivly.constants import ProductType


class BillingResponseCode(IntEnum):
    """Provider result codes (Play Billing numbering)."""

    SERVICE_TIMEOUT = -3
    FEATURE_NOT_SUPPORTED = -2
    SERVICE_DISCONNECTED = -1
    OK = 0
    USER_CANCELED = 1
    SERVICE_UNAVAILABLE = 2
    BILLING_UNAVAILABLE = 3
    ITEM_UNAVAILABLE = 4
    DEVELOPER_ERROR = 5
    ERROR = 6
    ITEM_ALREADY_OWNED = 7
    ITEM_NOT_OWNED = 8
    NETWORK_ERROR = 12


class ProviderError(Exception):
    """A provider call finished with a non-OK response code."""

    def __init__(self, response_code: int, debug_message: str = "") -> None:
        try:
            code_name = BillingResponseCode(response_code).name
        except ValueError:
            code_name = str(response_code)
        super().__init__(f"{code_name}: {debug_message}" if debug_message else code_name)
        self.response_code = response_code
        self.debug_message = debug_message


@dataclass(frozen=True)
class PurchaseUpdate:
    """One push notification from the provider's purchase listener."""

    response_code: int
    purchases: list[dict[str, Any]] = field(default_factory=list)
    debug_message: str = ""


@runtime_checkable
class BillingProvider(Protocol):
    """Async billing provider.

    - ``connect()`` returns once the connection is ready; raises
      ``ProviderError`` if setup fails.
    - ``wait_disconnected()`` returns when an established connection is lost.
    - The query methods return raw purchase JSON objects (``purchaseToken``,
      ``productIds``, ``purchaseTime``, ``orderId``) or raise ``ProviderError``.
    - ``purchase_updates()`` yields pushed purchase updates.
    """

    async def connect(self) -> None: ...

    async def wait_disconnected(self) -> None: ...

    async def query_purchases(
        self, product_type: ProductType,
    ) -> list[dict[str, Any]]: ...

    async def query_purchase_history(
        self, product_type: ProductType,
    ) -> list[dict[str, Any]]: ...

    def purchase_updates(self) -> AsyncIterator[PurchaseUpdate]: ...
