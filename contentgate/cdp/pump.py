"""Event pump: reads CDP events off every open connection and drives the session manager.

Runs as a single daemon thread so every `ContentSessionManager` callback happens on
one thread, in arrival order per connection. Work from other threads (a new address
to show, say) is handed over with `call_soon` and runs on that same thread.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from contextlib import suppress
from typing import Any

from ..http_client import HttpClientError
from ..redaction import redact_url
from ..session_manager import ContentSessionManager, NavigationError, NavigationPolicy, PopupRequest
from .surface import CdpSurface, CdpSurfaceFactory

_LOGGER = logging.getLogger("contentgate.cdp.pump")

# Failures caused by our own cancellation (Fetch.failRequest) or by a newer navigation.
_BENIGN_LOAD_ERRORS = {"net::ERR_ABORTED", "net::ERR_BLOCKED_BY_CLIENT"}


class CdpEventPump:
    def __init__(
        self,
        manager: ContentSessionManager,
        factory: CdpSurfaceFactory,
        *,
        poll_interval: float = 0.05,
    ) -> None:
        self.manager = manager
        self.factory = factory
        self.poll_interval = max(0.0, float(poll_interval))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        # surface_id -> requestIds of main-frame document loads in flight
        self._document_requests: dict[str, set[str]] = {}
        self._calls: queue.SimpleQueue[tuple[Future, Callable[..., Any], tuple[Any, ...]]] = queue.SimpleQueue()

    # ─────────────────────────────────────────────────────────────────────────
    # Thread lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="contentgate-cdp-pump", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                handled = self.pump_once()
            except Exception:  # noqa: BLE001
                _LOGGER.exception("cdp_pump_iteration_failed")
                handled = 0
            if not handled:
                self._stop.wait(self.poll_interval)

    def call_soon(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Queue `fn(*args)` for the pump thread; the returned future carries its result."""
        future: Future = Future()
        self._calls.put((future, fn, args))
        return future

    def pump_once(self) -> int:
        """Run queued calls, then drain and dispatch buffered events. Returns the work done."""
        handled = self._run_calls()
        browser = self.factory.browser_conn
        if browser is not None and not browser.closed:
            browser.drain_events()
            for event in browser.take_events():
                self._dispatch(self.dispatch_browser_event, event)
                handled += 1

        for surface in list(self.manager.surfaces):
            if not isinstance(surface, CdpSurface) or surface.conn.closed:
                continue
            surface.conn.drain_events()
            for event in surface.conn.take_events():
                # A previous event in this batch may have closed the surface.
                if self.manager.find(surface.surface_id) is None:
                    break
                self._dispatch(self.dispatch_surface_event, surface, event)
                handled += 1
        return handled

    def _run_calls(self) -> int:
        ran = 0
        while True:
            try:
                future, fn, args = self._calls.get_nowait()
            except queue.Empty:
                return ran
            if not future.set_running_or_notify_cancel():
                continue
            ran += 1
            try:
                future.set_result(fn(*args))
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("cdp_pump_call_failed fn=%s", getattr(fn, "__name__", fn))
                future.set_exception(exc)

    def _dispatch(self, handler, *args: Any) -> None:
        try:
            handler(*args)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("cdp_event_failed method=%s", args[-1].get("method"))

    # ─────────────────────────────────────────────────────────────────────────
    # Browser-level events
    # ─────────────────────────────────────────────────────────────────────────

    def dispatch_browser_event(self, event: dict[str, Any]) -> None:
        method = event.get("method")
        params = event.get("params") or {}
        if method == "Target.targetCreated":
            info = params.get("targetInfo") or {}
            self._on_target_created(info)
        elif method == "Target.targetDestroyed":
            self._on_target_gone(str(params.get("targetId") or ""))
        elif method == "Target.detachedFromTarget":
            self._on_target_gone(str(params.get("targetId") or ""))

    def _on_target_created(self, info: dict[str, Any]) -> None:
        if info.get("type") != "page":
            return
        target_id = info.get("targetId")
        opener_id = info.get("openerId")
        if not target_id or not opener_id:
            return
        if self.manager.find(str(target_id)) is not None:
            return
        if self.manager.find(str(opener_id)) is None:
            return
        # Chrome is already navigating the new tab; adopting it must not load it twice.
        try:
            self.manager.handle_popup_request(PopupRequest(url=None, target_id=str(target_id)))
        except HttpClientError as exc:
            _LOGGER.warning("popup_adopt_failed target=%s error=%s", target_id, exc)

    def _on_target_gone(self, target_id: str) -> None:
        if not target_id:
            return
        surface = self.manager.find(target_id)
        if surface is None:
            return
        if isinstance(surface, CdpSurface):
            surface.conn.close()
        self._document_requests.pop(target_id, None)
        self.manager.forget_surface(target_id)
        _LOGGER.info("surface_gone target=%s", target_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Tab-level events
    # ─────────────────────────────────────────────────────────────────────────

    def dispatch_surface_event(self, surface: CdpSurface, event: dict[str, Any]) -> None:
        method = event.get("method")
        params = event.get("params") or {}

        if method == "Fetch.requestPaused":
            self._on_request_paused(surface, params)
        elif method == "Network.requestWillBeSent":
            self._on_request_will_be_sent(surface, params)
        elif method == "Network.loadingFinished":
            self._document_requests.get(surface.surface_id, set()).discard(str(params.get("requestId") or ""))
        elif method == "Network.loadingFailed":
            self._on_loading_failed(surface, params)
        elif method == "Page.loadEventFired":
            self.manager.on_load_finished(surface)
        elif method == "Page.frameNavigated":
            surface.note_frame_navigated(params.get("frame") or {})
        elif method == "Page.frameRequestedNavigation":
            url = params.get("url")
            # Only schemes the network stack never sees reach the policy this way.
            if isinstance(url, str) and not url.lower().startswith(("http:", "https:", "about:", "data:", "blob:")):
                self.manager.on_navigation_decision(surface, url)
        elif method == "Inspector.detached":
            self._on_target_gone(surface.surface_id)

    def _is_main_frame(self, surface: CdpSurface, frame_id: Any) -> bool:
        return surface.main_frame_id is None or frame_id is None or frame_id == surface.main_frame_id

    def _on_request_paused(self, surface: CdpSurface, params: dict[str, Any]) -> None:
        request_id = str(params.get("requestId") or "")
        url = (params.get("request") or {}).get("url")
        policy = NavigationPolicy.ALLOW
        # Redirect hops are counted by requestWillBeSent, not treated as new navigations.
        if not params.get("redirectedRequestId") and self._is_main_frame(surface, params.get("frameId")):
            try:
                policy = self.manager.on_navigation_decision(surface, url)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("navigation_decision_failed surface=%s", surface.surface_id)
                policy = NavigationPolicy.ALLOW
        try:
            if policy is NavigationPolicy.CANCEL:
                surface.fail_request(request_id)
            else:
                surface.continue_request(request_id)
        except HttpClientError as exc:
            _LOGGER.info("request_resume_failed surface=%s url=%s error=%s", surface.surface_id, redact_url(url), exc)

    def _on_request_will_be_sent(self, surface: CdpSurface, params: dict[str, Any]) -> None:
        if params.get("type") != "Document" or not self._is_main_frame(surface, params.get("frameId")):
            return
        request_id = str(params.get("requestId") or "")
        self._document_requests.setdefault(surface.surface_id, set()).add(request_id)
        if params.get("redirectResponse"):
            self.manager.on_server_redirect(surface)

    def _on_loading_failed(self, surface: CdpSurface, params: dict[str, Any]) -> None:
        request_id = str(params.get("requestId") or "")
        pending = self._document_requests.get(surface.surface_id, set())
        if request_id not in pending:
            return
        pending.discard(request_id)
        code = str(params.get("errorText") or "")
        if params.get("canceled") or code in _BENIGN_LOAD_ERRORS:
            return
        self.manager.on_provisional_navigation_failed(surface, NavigationError(code=code))

    def close(self) -> None:
        self.stop()
        with suppress(HttpClientError):
            self.factory.close()


__all__ = ["CdpEventPump"]
