"""Browsing surfaces backed by Chrome tabs."""

from __future__ import annotations

import logging
from contextlib import suppress
from typing import Any

from ..http_client import HttpClientError
from ..session_manager import BrowsingSurface, SurfaceSettings
from .connection import CdpConnection, ConnectionFactory, http_get_json

_LOGGER = logging.getLogger("contentgate.cdp.surface")

# Network.setCookie accepts only these keys; everything else a snapshot carries
# (size, session, priority, sourceScheme, ...) is read-only metadata.
_SETTABLE_COOKIE_KEYS = ("name", "value", "domain", "path", "secure", "httpOnly", "sameSite", "expires")


def cookie_params(properties: dict[str, Any]) -> dict[str, Any] | None:
    name = properties.get("name")
    value = properties.get("value")
    domain = properties.get("domain")
    if not isinstance(name, str) or not name or not isinstance(value, str) or not isinstance(domain, str):
        return None
    params = {k: properties[k] for k in _SETTABLE_COOKIE_KEYS if k in properties}
    expires = params.get("expires")
    # Session cookies are reported with expires=-1; Network.setCookie wants it omitted.
    if properties.get("session") is True or not isinstance(expires, (int, float)) or expires <= 0:
        params.pop("expires", None)
    if params.get("sameSite") not in {"Strict", "Lax", "None"}:
        params.pop("sameSite", None)
    params.setdefault("path", "/")
    return params


class CdpSurface:
    """One Chrome page target driven over its own CDP connection."""

    def __init__(self, conn: CdpConnection, target_id: str, *, opener_id: str | None = None) -> None:
        self.conn = conn
        self.surface_id = target_id
        self.opener_id = opener_id
        self._url: str | None = None
        self._main_frame_id: str | None = None

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def main_frame_id(self) -> str | None:
        return self._main_frame_id

    @property
    def can_go_back(self) -> bool:
        try:
            history = self.conn.send("Page.getNavigationHistory")
        except HttpClientError:
            return False
        return int(history.get("currentIndex") or 0) > 0

    def attach(self) -> None:
        """Enable the domains the event pump relies on and route document requests through Fetch."""
        for method in ("Page.enable", "Network.enable", "Runtime.enable"):
            self.conn.send(method)
        self.conn.send(
            "Fetch.enable",
            {"patterns": [{"urlPattern": "*", "resourceType": "Document", "requestStage": "Request"}]},
        )
        with suppress(HttpClientError):
            tree = self.conn.send("Page.getFrameTree")
            frame = (tree.get("frameTree") or {}).get("frame") or {}
            self._main_frame_id = frame.get("id")
            if frame.get("url"):
                self._url = frame.get("url")

    def configure(self, settings: SurfaceSettings) -> None:
        self.conn.send("Emulation.setScriptExecutionDisabled", {"value": not settings.javascript_enabled})
        with suppress(HttpClientError):
            self.conn.send("Emulation.setPageScaleFactor", {"pageScaleFactor": settings.page_scale})

    def load(self, url: str) -> None:
        self._url = url
        self.conn.send("Page.navigate", {"url": url})

    def reload(self) -> None:
        self.conn.send("Page.reload", {"ignoreCache": False})

    def stop_loading(self) -> None:
        with suppress(HttpClientError):
            self.conn.send("Page.stopLoading")

    def go_back(self) -> None:
        history = self.conn.send("Page.getNavigationHistory")
        index = int(history.get("currentIndex") or 0)
        entries = history.get("entries") or []
        if index <= 0 or index - 1 >= len(entries):
            return
        entry = entries[index - 1]
        self.conn.send("Page.navigateToHistoryEntry", {"entryId": entry.get("id")})

    def evaluate_script(self, source: str) -> Any:
        res = self.conn.send("Runtime.evaluate", {"expression": source, "returnByValue": True})
        if res.get("exceptionDetails"):
            details = res["exceptionDetails"]
            raise HttpClientError(str(details.get("text") or details))
        return (res.get("result") or {}).get("value")

    def get_cookies(self) -> list[dict[str, Any]]:
        res = self.conn.send("Network.getAllCookies")
        cookies = res.get("cookies")
        return [c for c in cookies if isinstance(c, dict)] if isinstance(cookies, list) else []

    def set_cookie(self, properties: dict[str, Any]) -> bool:
        params = cookie_params(properties)
        if params is None:
            return False
        res = self.conn.send("Network.setCookie", params)
        return bool(res.get("success", True))

    def continue_request(self, request_id: str) -> None:
        self.conn.send("Fetch.continueRequest", {"requestId": request_id})

    def fail_request(self, request_id: str) -> None:
        self.conn.send("Fetch.failRequest", {"requestId": request_id, "errorReason": "Aborted"})

    def note_frame_navigated(self, frame: dict[str, Any]) -> None:
        if frame.get("parentId"):
            return
        self._main_frame_id = frame.get("id") or self._main_frame_id
        if isinstance(frame.get("url"), str):
            self._url = frame["url"]

    def close(self) -> None:
        with suppress(HttpClientError):
            self.conn.send("Page.close")
        self.conn.close()


class CdpSurfaceFactory:
    """Creates surfaces as new Chrome tabs, or adopts tabs Chrome opened for pop-ups.

    Holds a browser-level connection with target discovery enabled; the event pump
    reads `Target.targetCreated` from it to spot pop-ups.
    """

    def __init__(
        self,
        cdp_port: int,
        *,
        timeout: float = 5.0,
        connect: ConnectionFactory | None = None,
    ) -> None:
        self.cdp_port = cdp_port
        self.timeout = timeout
        self._connect = connect or (lambda ws_url: CdpConnection(ws_url, timeout=timeout))
        self.browser_conn: CdpConnection | None = None

    def _endpoint(self, path: str) -> str:
        return f"http://127.0.0.1:{self.cdp_port}{path}"

    def ensure_browser_connection(self) -> CdpConnection:
        if self.browser_conn is None or self.browser_conn.closed:
            version = http_get_json(self._endpoint("/json/version"))
            ws_url = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
            if not ws_url:
                raise HttpClientError("CDP browser WebSocket URL not found")
            conn = self._connect(ws_url)
            conn.send("Target.setDiscoverTargets", {"discover": True})
            self.browser_conn = conn
        return self.browser_conn

    def _tab_ws_url(self, target_id: str) -> str:
        targets = http_get_json(self._endpoint("/json/list")) or []
        for target in targets:
            if isinstance(target, dict) and target.get("id") == target_id:
                ws_url = target.get("webSocketDebuggerUrl")
                if ws_url:
                    return str(ws_url)
        raise HttpClientError(f"No debugger URL for target {target_id}")

    def create_surface(
        self, *, opener: BrowsingSurface | None = None, target_id: str | None = None
    ) -> CdpSurface:
        if target_id is None:
            browser = self.ensure_browser_connection()
            result = browser.send("Target.createTarget", {"url": "about:blank"})
            target_id = result.get("targetId")
            if not target_id:
                raise HttpClientError("Failed to create browser tab")
        surface = CdpSurface(
            self._connect(self._tab_ws_url(str(target_id))),
            str(target_id),
            opener_id=opener.surface_id if opener is not None else None,
        )
        surface.attach()
        _LOGGER.info("surface_created target=%s opener=%s", target_id, surface.opener_id or "-")
        return surface

    def close(self) -> None:
        if self.browser_conn is not None:
            self.browser_conn.close()
            self.browser_conn = None


__all__ = ["CdpSurface", "CdpSurfaceFactory", "cookie_params"]
