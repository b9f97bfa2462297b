from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .store import KeyValueStore, StoreKeys, get_bool, get_float, get_str

Primitive = Union[str, int, float, bool, None]

# Persisted spellings of the two launch modes.
_MODE_WEBVIEW = "WebView"
_MODE_FALLBACK = "Fallback"


class LaunchMode(str, Enum):
    WEBVIEW = "webview"
    FALLBACK = "fallback"


class FallbackReason(str, Enum):
    ORGANIC = "organic"
    DISABLED = "disabled"
    FAILURE = "failure"


class ResolverState(str, Enum):
    LOADING = "loading"
    RESOLVING_ATTRIBUTION = "resolving_attribution"
    AWAITING_PERMISSION_DECISION = "awaiting_permission_decision"
    QUERYING = "querying"
    WEBVIEW = "webview"
    FALLBACK = "fallback"
    OFFLINE = "offline"


class PermissionOutcome(str, Enum):
    GRANTED = "granted"
    DECLINED = "declined"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class LaunchDecision:
    mode: LaunchMode
    url: str | None = None
    expires_at: float | None = None
    has_launched_before: bool = True
    fallback_reason: FallbackReason | None = None

    def __post_init__(self) -> None:
        if self.mode is LaunchMode.WEBVIEW and not self.url:
            raise ValueError("WebView decision requires a url")

    @classmethod
    def webview(cls, url: str, expires_at: float | None = None) -> LaunchDecision:
        return cls(mode=LaunchMode.WEBVIEW, url=url, expires_at=expires_at)

    @classmethod
    def fallback(cls, reason: FallbackReason) -> LaunchDecision:
        return cls(mode=LaunchMode.FALLBACK, fallback_reason=reason)

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (time.time() if now is None else now)

    @classmethod
    def load(cls, store: KeyValueStore) -> LaunchDecision | None:
        """Read the persisted decision; `None` when nothing was decided yet."""
        raw_mode = get_str(store, StoreKeys.APP_MODE)
        launched = get_bool(store, StoreKeys.HAS_LAUNCHED)
        if raw_mode == _MODE_FALLBACK:
            reason_raw = get_str(store, StoreKeys.FALLBACK_REASON)
            try:
                reason = FallbackReason(reason_raw) if reason_raw else None
            except ValueError:
                reason = None
            return cls(mode=LaunchMode.FALLBACK, has_launched_before=launched, fallback_reason=reason)
        url = get_str(store, StoreKeys.SAVED_URL)
        if raw_mode == _MODE_WEBVIEW and url:
            return cls(
                mode=LaunchMode.WEBVIEW,
                url=url,
                expires_at=get_float(store, StoreKeys.SAVED_EXPIRES),
                has_launched_before=launched,
            )
        return None

    def save(self, store: KeyValueStore) -> None:
        if self.mode is LaunchMode.WEBVIEW:
            store.set(StoreKeys.SAVED_URL, self.url)
            if self.expires_at is None:
                store.remove(StoreKeys.SAVED_EXPIRES)
            else:
                store.set(StoreKeys.SAVED_EXPIRES, self.expires_at)
            store.set(StoreKeys.APP_MODE, _MODE_WEBVIEW)
            store.remove(StoreKeys.FALLBACK_REASON)
        else:
            store.set(StoreKeys.APP_MODE, _MODE_FALLBACK)
            if self.fallback_reason is not None:
                store.set(StoreKeys.FALLBACK_REASON, self.fallback_reason.value)
        store.set(StoreKeys.HAS_LAUNCHED, True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "url": self.url,
            "expiresAt": self.expires_at,
            "hasLaunchedBefore": self.has_launched_before,
            "fallbackReason": self.fallback_reason.value if self.fallback_reason else None,
        }


def _as_primitive(value: Any) -> Primitive:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _opt_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    return None


@dataclass(frozen=True)
class AttributionSnapshot:
    """Install attribution as reported by the attribution SDK.

    Known fields are typed; everything else lands in `extras` in arrival order so
    the outgoing configuration request still carries it verbatim.
    """

    af_status: str | None = None
    media_source: str | None = None
    campaign: str | None = None
    is_first_launch: bool | None = None
    install_time: str | None = None
    extras: dict[str, Primitive] = field(default_factory=dict)
    received_at: float = field(default_factory=time.time)

    _KNOWN = ("af_status", "media_source", "campaign", "is_first_launch", "install_time")

    @classmethod
    def from_raw(cls, fields: Mapping[str, Any], *, received_at: float | None = None) -> AttributionSnapshot:
        extras: dict[str, Primitive] = {}
        for key, value in fields.items():
            if not isinstance(key, str) or key in cls._KNOWN:
                continue
            extras[key] = _as_primitive(value)
        return cls(
            af_status=_opt_str(fields.get("af_status")),
            media_source=_opt_str(fields.get("media_source")),
            campaign=_opt_str(fields.get("campaign")),
            is_first_launch=_opt_bool(fields.get("is_first_launch")),
            install_time=_opt_str(fields.get("install_time")),
            extras=extras,
            received_at=time.time() if received_at is None else received_at,
        )

    @property
    def is_organic(self) -> bool:
        return (self.af_status or "").strip().lower() == "organic"

    @property
    def raw_fields(self) -> dict[str, Primitive]:
        out: dict[str, Primitive] = {}
        for name in self._KNOWN:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        out.update(self.extras)
        return out


@dataclass(frozen=True)
class NotificationAskRecord:
    last_asked_at: float | None = None

    @classmethod
    def load(cls, store: KeyValueStore) -> NotificationAskRecord:
        return cls(last_asked_at=get_float(store, StoreKeys.LAST_NOTIFICATION_ASK))

    def in_cooldown(self, cooldown_s: float, now: float | None = None) -> bool:
        if self.last_asked_at is None:
            return False
        current = time.time() if now is None else now
        return current - self.last_asked_at < cooldown_s


@dataclass(frozen=True)
class CookieRecord:
    domain: str
    name: str
    properties: dict[str, Any]

    @property
    def key(self) -> tuple[str, str]:
        return self.domain, self.name


__all__ = [
    "AttributionSnapshot",
    "CookieRecord",
    "FallbackReason",
    "LaunchDecision",
    "LaunchMode",
    "NotificationAskRecord",
    "PermissionOutcome",
    "Primitive",
    "ResolverState",
]
