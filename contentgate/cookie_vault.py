"""Authentication cookie persistence across browsing sessions and restarts.

Layout in the store: `{domain: {name: properties}}`. Each snapshot replaces the
previous one entirely; all surfaces share one cookie store, so any surface sees
the full set.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .models import CookieRecord
from .store import KeyValueStore, StoreKeys

if TYPE_CHECKING:
    from .session_manager import BrowsingSurface

_LOGGER = logging.getLogger("contentgate.cookie_vault")


def group_cookies(cookies: list[dict[str, Any]]) -> dict[str, dict[str, dict[str, Any]]]:
    grouped: dict[str, dict[str, dict[str, Any]]] = {}
    for cookie in cookies:
        if not isinstance(cookie, dict):
            continue
        domain = cookie.get("domain")
        name = cookie.get("name")
        if not isinstance(domain, str) or not isinstance(name, str) or not name:
            continue
        grouped.setdefault(domain, {})[name] = dict(cookie)
    return grouped


def iter_records(nested: Any) -> tuple[list[CookieRecord], int]:
    """Flatten the stored structure; returns (records, number of malformed entries skipped)."""
    records: list[CookieRecord] = []
    skipped = 0
    if not isinstance(nested, dict):
        return records, 0
    for domain, by_name in nested.items():
        if not isinstance(domain, str) or not isinstance(by_name, dict):
            skipped += 1
            continue
        for name, props in by_name.items():
            if not isinstance(name, str) or not isinstance(props, dict):
                skipped += 1
                continue
            if not isinstance(props.get("value"), str):
                skipped += 1
                continue
            merged = {**props, "name": props.get("name") or name, "domain": props.get("domain") or domain}
            records.append(CookieRecord(domain=domain, name=name, properties=merged))
    return records, skipped


class CookieVault:
    def __init__(self, store: KeyValueStore, *, key: str = StoreKeys.STORED_COOKIES) -> None:
        self.store = store
        self.key = key

    def snapshot(self, surface: BrowsingSurface) -> int:
        """Persist every cookie visible to `surface`. Returns the number of cookies written."""
        grouped = group_cookies(surface.get_cookies())
        self.store.set(self.key, grouped)
        total = sum(len(v) for v in grouped.values())
        _LOGGER.debug("cookie_snapshot domains=%d cookies=%d", len(grouped), total)
        return total

    def restore(self, surface: BrowsingSurface) -> int:
        """Re-apply the stored cookies to `surface`. Returns the number applied."""
        records, skipped = iter_records(self.store.get(self.key))
        applied = 0
        for record in records:
            try:
                ok = surface.set_cookie(record.properties)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("cookie_restore_skipped domain=%s name=%s error=%s", record.domain, record.name, exc)
                skipped += 1
                continue
            if ok:
                applied += 1
            else:
                skipped += 1
        if applied or skipped:
            _LOGGER.info("cookie_restore applied=%d skipped=%d", applied, skipped)
        return applied

    def records(self) -> list[CookieRecord]:
        records, _ = iter_records(self.store.get(self.key))
        return records

    def clear(self) -> None:
        self.store.remove(self.key)


__all__ = ["CookieVault", "group_cookies", "iter_records"]
