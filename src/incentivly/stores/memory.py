"""MemoryStore — dict-backed Store for tests and ephemeral hosts."""

from __future__ import annotations

from typing import Any


class MemoryStore:
    """Implements the ``Store`` protocol over a plain dict.

    ``set_string(key, None)`` removes the key.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    async def get_string(self, key: str) -> str | None:
        value = self._data.get(key)
        return value if isinstance(value, str) else None

    async def set_string(self, key: str, value: str | None) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    async def get_bool(self, key: str, default: bool = False) -> bool:
        value = self._data.get(key)
        return value if isinstance(value, bool) else default

    async def set_bool(self, key: str, value: bool) -> None:
        self._data[key] = bool(value)

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of the stored values."""
        return dict(self._data)
