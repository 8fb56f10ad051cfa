"""JsonFileStore — Store implementation backed by one JSON file per namespace.

Layout: ``{directory}/{namespace}.json`` holds a single flat JSON object of
string and bool values. The file is the durable copy; an in-memory dict
mirrors it after the first read.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from incentivly.constants import DEFAULT_NAMESPACE

logger = logging.getLogger(__name__)


class JsonFileStore:
    """Durable ``Store`` using atomic whole-file rewrites.

    Implements the incentivly ``Store`` protocol:

    - ``get_string(key) -> str | None`` / ``set_string(key, value)``
    - ``get_bool(key, default) -> bool`` / ``set_bool(key, value)``

    Write strategy: every setter rewrites the file through a temp file,
    ``fsync`` and ``os.replace`` so a crash leaves either the old or the new
    content, never a torn file. Disk I/O runs in a worker thread so the event
    loop is not blocked. A single ``asyncio.Lock`` serializes writers.

    A missing file is an empty store. An unreadable or corrupt file is logged
    and treated as empty; the next write replaces it.
    """

    def __init__(
        self,
        directory: str | os.PathLike[str],
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self._path = Path(directory) / f"{namespace}.json"
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # -- file helpers ---------------------------------------------------------

    def _read_file(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError:
            logger.warning("Failed to read store file %s; starting empty.", self._path)
            return {}

        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Store file %s is corrupt; starting empty.", self._path)
            return {}
        if not isinstance(obj, dict):
            logger.warning("Store file %s is not an object; starting empty.", self._path)
            return {}
        return obj

    def _write_file(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    async def _loaded(self) -> dict[str, Any]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read_file)
        return self._data

    async def _put(self, key: str, value: Any) -> None:
        async with self._lock:
            data = dict(await self._loaded())
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            await asyncio.to_thread(self._write_file, data)
            self._data = data

    # -- Store protocol -------------------------------------------------------

    async def get_string(self, key: str) -> str | None:
        value = (await self._loaded()).get(key)
        return value if isinstance(value, str) else None

    async def set_string(self, key: str, value: str | None) -> None:
        await self._put(key, value)

    async def get_bool(self, key: str, default: bool = False) -> bool:
        value = (await self._loaded()).get(key)
        return value if isinstance(value, bool) else default

    async def set_bool(self, key: str, value: bool) -> None:
        await self._put(key, bool(value))
