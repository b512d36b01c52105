from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

CACHE_LOGGER = logging.getLogger("laptop_ledger.cache")


class LocalCache(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value


class JsonFileCache:
    """Best-effort key/value cache kept in one JSON file. Read and write errors are logged, never raised."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load_unlocked(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError, ValueError) as exc:
            CACHE_LOGGER.debug("Cache read failed path=%s error=%s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, str)}

    def _save_unlocked(self, values: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(values, ensure_ascii=True), encoding="utf-8")

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._load_unlocked().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            values = self._load_unlocked()
            values[key] = value
            try:
                self._save_unlocked(values)
            except OSError as exc:
                CACHE_LOGGER.debug("Cache write failed path=%s error=%s", self.path, exc)
