"""Durable key-value storage for launch state.

Design
- One JSON document per install (`state.json`), loaded once, rewritten on every mutation.
- Atomic writes: write temp file then replace; the previous file is kept as `.bak`.
- Fail-soft reads: a missing or corrupt file behaves like a first launch.

Every reader passes (or documents) its default, so absence never raises.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol

_LOGGER = logging.getLogger("contentgate.store")


class StoreKeys:
    HAS_LAUNCHED = "has_launched"
    APP_MODE = "app_mode"
    SAVED_URL = "saved_url"
    SAVED_EXPIRES = "saved_expires"
    FALLBACK_REASON = "fallback_reason"
    TEMP_URL = "temp_url"
    ACCEPTED_NOTIFICATIONS = "accepted_notifications"
    DECLINED_NOTIFICATIONS = "system_close_notifications"
    LAST_NOTIFICATION_ASK = "last_notification_ask"
    PUSH_TOKEN = "fcm_token"
    DEVICE_ID = "device_id"
    STORED_COOKIES = "stored_cookies"


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


def get_bool(store: KeyValueStore, key: str, default: bool = False) -> bool:
    val = store.get(key)
    return val if isinstance(val, bool) else default


def get_str(store: KeyValueStore, key: str) -> str | None:
    val = store.get(key)
    if isinstance(val, str) and val.strip():
        return val
    return None


def get_float(store: KeyValueStore, key: str) -> float | None:
    val = store.get(key)
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return float(val)
    return None


class MemoryStore:
    """In-process store (tests, dry runs)."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._items: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._items.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._items)


class JsonFileStore:
    """Disk-backed store shared by the resolver, the cookie vault and the CLI."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._items = self._load()

    def _load(self) -> dict[str, Any]:
        p = self.path
        try:
            if not p.exists() or not p.is_file():
                return {}
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except (OSError, ValueError) as exc:
            _LOGGER.warning("store_load_failed path=%s error=%s", p, exc)
            return {}
        if not isinstance(obj, dict):
            return {}
        items = obj.get("items")
        return dict(items) if isinstance(items, dict) else {}

    def _flush(self) -> None:
        p = self.path
        p.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps({"version": 1, "items": self._items}, ensure_ascii=True, indent=2, sort_keys=True)

        tmp = p.with_suffix(p.suffix + ".tmp")
        bak = p.with_suffix(p.suffix + ".bak")
        if p.exists() and p.is_file():
            with suppress(OSError):
                shutil.copyfile(p, bak)

        tmp.write_text(text, encoding="utf-8")
        with suppress(OSError):
            os.chmod(tmp, 0o600)
        tmp.replace(p)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._items.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = value
            self._flush()

    def remove(self, key: str) -> None:
        with self._lock:
            if key not in self._items:
                return
            del self._items[key]
            self._flush()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items = {}
            with suppress(FileNotFoundError):
                self.path.unlink()


__all__ = [
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "StoreKeys",
    "get_bool",
    "get_float",
    "get_str",
]
