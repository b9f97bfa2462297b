"""Remote configuration request/response.

Request: POST JSON carrying the raw attribution fields plus device/app identity.
Response: `{"ok": bool, "url": str, "expires": number}`; `url`/`expires` are only
required when `ok` is true. `expires` is kept as an opaque comparator.
"""

from __future__ import annotations

import json
import locale
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import GateConfig
from .http_client import HttpClientError, http_post_json
from .models import AttributionSnapshot, Primitive
from .redaction import redact_payload, redact_url

_LOGGER = logging.getLogger("contentgate.remote_config")


class MalformedResponseError(HttpClientError):
    pass


def preferred_locale() -> str:
    """Two-letter, upper-cased language code of the preferred locale ("EN" if unknown)."""
    candidates: list[str | None] = [os.environ.get("LC_ALL"), os.environ.get("LANG")]
    try:
        candidates.append(locale.getlocale()[0])
    except ValueError:
        pass
    for raw in candidates:
        code = (raw or "").strip()
        if len(code) >= 2 and code[:2].isalpha() and code.upper() not in {"C", "POSIX"}:
            return code[:2].upper()
    return "EN"


@dataclass(frozen=True)
class ConfigQuery:
    af_id: str
    bundle_id: str
    os: str
    store_id: str
    locale: str
    attribution: AttributionSnapshot | None = None
    push_token: str | None = None
    firebase_project_id: str | None = None
    extras: dict[str, Primitive] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.attribution is not None:
            payload.update(self.attribution.raw_fields)
        payload.update(self.extras)
        payload["af_id"] = self.af_id
        payload["bundle_id"] = self.bundle_id
        payload["os"] = self.os
        payload["store_id"] = self.store_id
        payload["locale"] = self.locale
        if self.push_token:
            payload["push_token"] = self.push_token
        if self.firebase_project_id:
            payload["firebase_project_id"] = self.firebase_project_id
        return payload


@dataclass(frozen=True)
class ConfigResponse:
    enabled: bool
    url: str | None = None
    expires: float | None = None


def parse_config_response(body: str) -> ConfigResponse:
    try:
        obj = json.loads(body)
    except ValueError as exc:
        raise MalformedResponseError(f"Response is not JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise MalformedResponseError("Response is not a JSON object")

    ok = obj.get("ok")
    if not isinstance(ok, bool):
        raise MalformedResponseError("Response field 'ok' missing or not a boolean")
    if not ok:
        return ConfigResponse(enabled=False)

    url = obj.get("url")
    expires = obj.get("expires")
    if not isinstance(url, str) or not url.strip():
        raise MalformedResponseError("Response field 'url' missing")
    if isinstance(expires, bool) or not isinstance(expires, (int, float)):
        raise MalformedResponseError("Response field 'expires' missing or not a number")
    return ConfigResponse(enabled=True, url=url.strip(), expires=float(expires))


class ConfigClient(Protocol):
    def fetch(self, query: ConfigQuery) -> ConfigResponse: ...


class RemoteConfigClient:
    """Sends one configuration request per `fetch` call; raises `HttpClientError` on any failure."""

    def __init__(self, config: GateConfig) -> None:
        self.config = config

    def fetch(self, query: ConfigQuery) -> ConfigResponse:
        payload = query.to_payload()
        _LOGGER.info("config_query endpoint=%s payload=%s", redact_url(self.config.endpoint), redact_payload(payload))
        result = http_post_json(self.config.endpoint, payload, self.config)
        response = parse_config_response(str(result.get("body") or ""))
        _LOGGER.info("config_response enabled=%s url=%s", response.enabled, redact_url(response.url))
        return response


__all__ = [
    "ConfigClient",
    "ConfigQuery",
    "ConfigResponse",
    "MalformedResponseError",
    "RemoteConfigClient",
    "parse_config_response",
    "preferred_locale",
]
