"""Abstract persistence interface for device-scoped SDK state.

Defines the Store Protocol that the ledger store and registration helpers
depend on. Concrete implementations live in ``incentivly.stores``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Store(Protocol):
    """Async key-value backend scoped to one installation namespace.

    Writes must be durable when the coroutine returns: the host process
    may be killed at any point afterwards.
    """

    async def get_string(self, key: str) -> str | None: ...

    async def set_string(self, key: str, value: str | None) -> None: ...

    async def get_bool(self, key: str, default: bool = False) -> bool: ...

    async def set_bool(self, key: str, value: bool) -> None: ...
