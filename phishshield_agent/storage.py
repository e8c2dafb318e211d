"""
Key-value state store.

The agent keeps no state in memory between calls: settings, the last scan,
scan history and the report ledger are loaded from and written back to a
KeyValueStore on every operation. MemoryStore backs tests and ephemeral
runs; JsonFileStore keeps one JSON document on disk and replaces it
atomically on each write.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Iterable, Protocol

from pydantic import ValidationError

from .config import HISTORY_LIMIT
from .errors import StorageError
from .log import get_logger
from .models import FusedResult, Settings

logger = get_logger(__name__)

STORAGE_KEYS = {
    "settings": "settings",
    "last_scan": "lastScan",
    "scan_history": "scanHistory",
    "ledger": "ledger",
}


class WriteLock:
    """asyncio.Lock created on first use in each running event loop.

    Serializes read-modify-write sequences within a loop. An owner reused
    from a later loop (a new asyncio.run) gets a fresh lock instead of one
    bound to a closed loop.
    """

    def __init__(self) -> None:
        self._lock: asyncio.Lock | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _current(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not loop:
            self._lock = asyncio.Lock()
            self._loop = loop
        return self._lock

    async def __aenter__(self) -> None:
        await self._current().acquire()

    async def __aexit__(self, *exc: Any) -> None:
        self._current().release()


class KeyValueStore(Protocol):
    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        ...

    async def set(self, values: dict[str, Any]) -> None:
        ...


class MemoryStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    async def set(self, values: dict[str, Any]) -> None:
        self._data.update(copy.deepcopy(values))


class JsonFileStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageError(f"Unable to read state file: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"State file is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise StorageError("State file does not hold an object.")
        return data

    def _get_sync(self, keys: list[str]) -> dict[str, Any]:
        with self._lock:
            data = self._read_all()
        return {k: data[k] for k in keys if k in data}

    def _set_sync(self, values: dict[str, Any]) -> None:
        with self._lock:
            data = self._read_all()
            data.update(values)
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=str(self.path.parent))
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        json.dump(data, f, separators=(",", ":"))
                    os.replace(tmp, self.path)
                except BaseException:
                    try:
                        os.unlink(tmp)
                    except OSError:
                        pass
                    raise
            except (OSError, TypeError, ValueError) as e:
                raise StorageError(f"Unable to write state file: {e}") from e

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        return await asyncio.to_thread(self._get_sync, list(keys))

    async def set(self, values: dict[str, Any]) -> None:
        await asyncio.to_thread(self._set_sync, dict(values))


def _alias_keys(patch: dict[str, Any]) -> dict[str, Any]:
    """Map snake_case setting names in a patch onto their stored camelCase keys."""
    out: dict[str, Any] = {}
    for key, value in patch.items():
        field = Settings.model_fields.get(key)
        out[field.alias if field is not None and field.alias else key] = value
    return out


class StateStore:
    """Settings, last scan and scan history on top of a KeyValueStore."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        # Guards the settings merge and the history prepend.
        self._write_lock = WriteLock()

    async def get_settings(self) -> Settings:
        stored = await self.store.get([STORAGE_KEYS["settings"]])
        raw = stored.get(STORAGE_KEYS["settings"]) or {}
        try:
            return Settings.model_validate(raw)
        except ValidationError as e:
            raise StorageError(f"Stored settings are invalid: {e}") from e

    async def set_settings(self, patch: dict[str, Any]) -> Settings:
        async with self._write_lock:
            current = await self.get_settings()
            merged = {**current.model_dump(by_alias=True), **_alias_keys(patch)}
            nxt = Settings.model_validate(merged)
            await self.store.set({STORAGE_KEYS["settings"]: nxt.model_dump(by_alias=True)})
        logger.info("settings_updated", keys=sorted(patch))
        return nxt

    async def get_last_scan(self) -> FusedResult | None:
        stored = await self.store.get([STORAGE_KEYS["last_scan"]])
        raw = stored.get(STORAGE_KEYS["last_scan"])
        return FusedResult.model_validate(raw) if raw else None

    async def set_last_scan(self, scan: FusedResult, settings: Settings | None = None) -> None:
        settings = settings or await self.get_settings()
        dumped = scan.model_dump(by_alias=True)
        values: dict[str, Any] = {STORAGE_KEYS["last_scan"]: dumped}
        async with self._write_lock:
            if settings.store_history:
                stored = await self.store.get([STORAGE_KEYS["scan_history"]])
                history = stored.get(STORAGE_KEYS["scan_history"]) or []
                values[STORAGE_KEYS["scan_history"]] = [dumped, *history][:HISTORY_LIMIT]
            await self.store.set(values)

    async def get_history(self) -> list[FusedResult]:
        stored = await self.store.get([STORAGE_KEYS["scan_history"]])
        return [FusedResult.model_validate(item) for item in stored.get(STORAGE_KEYS["scan_history"]) or []]

    async def clear_history(self) -> None:
        async with self._write_lock:
            await self.store.set({STORAGE_KEYS["scan_history"]: []})
