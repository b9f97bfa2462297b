"""Content session: one primary browsing surface plus a stack of pop-up surfaces.

The manager owns navigation policy, redirect protection and cookie capture for
every surface it creates. All callbacks (`on_*`, `handle_*`) are expected on one
thread (the surface event thread); cookie snapshots are pushed to a separate
executor so a navigation decision is never held up by storage I/O.
"""

from __future__ import annotations

import logging
import webbrowser
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlsplit

from .config import DEFAULT_REDIRECT_LIMIT
from .cookie_vault import CookieVault
from .page_scripts import VIEWPORT_LOCK_SCRIPT_SOURCE
from .redaction import redact_url
from .redirect_guard import RedirectGuard, RedirectVerdict

_LOGGER = logging.getLogger("contentgate.session")

BLANK_ADDRESSES = {"", "about:blank"}
TOO_MANY_REDIRECTS = "net::ERR_TOO_MANY_REDIRECTS"


@dataclass(frozen=True)
class SurfaceSettings:
    """Per-surface settings a surface applies in `configure`.

    Pop-ups without a user gesture and inline media autoplay are browser-wide and
    come from the launcher flags; pinch zoom is suppressed by the viewport lock script.
    """

    javascript_enabled: bool = True
    page_scale: float = 1.0


class BrowsingSurface(Protocol):
    surface_id: str

    @property
    def url(self) -> str | None: ...

    @property
    def can_go_back(self) -> bool: ...

    def configure(self, settings: SurfaceSettings) -> None: ...

    def load(self, url: str) -> None: ...

    def reload(self) -> None: ...

    def stop_loading(self) -> None: ...

    def go_back(self) -> None: ...

    def evaluate_script(self, source: str) -> Any: ...

    def get_cookies(self) -> list[dict[str, Any]]: ...

    def set_cookie(self, properties: dict[str, Any]) -> bool: ...

    def close(self) -> None: ...


class SurfaceFactory(Protocol):
    def create_surface(self, *, opener: BrowsingSurface | None = None, target_id: str | None = None) -> BrowsingSurface: ...


class NavigationPolicy(str, Enum):
    ALLOW = "allow"
    CANCEL = "cancel"


class BackAction(str, Enum):
    CLOSED_AUXILIARY = "closed_auxiliary"
    WENT_BACK = "went_back"
    NONE = "none"


@dataclass(frozen=True)
class PopupRequest:
    url: str | None
    # Set when the content targets an existing frame; such requests are not pop-ups.
    target_frame: str | None = None
    # Set when the browser already created the new context and it only needs adopting.
    target_id: str | None = None


@dataclass(frozen=True)
class NavigationError:
    code: str
    message: str = ""

    @property
    def is_too_many_redirects(self) -> bool:
        return self.code == TOO_MANY_REDIRECTS


@dataclass(frozen=True)
class LoadFailure:
    surface_id: str
    error: NavigationError
    url: str | None = None


def is_web_scheme(url: str) -> bool:
    try:
        scheme = urlsplit(url).scheme.lower()
    except ValueError:
        return False
    return scheme in {"http", "https"}


def _open_external_default(url: str) -> bool:
    return webbrowser.open(url)


class ContentSessionManager:
    def __init__(
        self,
        factory: SurfaceFactory,
        vault: CookieVault,
        *,
        settings: SurfaceSettings | None = None,
        redirect_limit: int = DEFAULT_REDIRECT_LIMIT,
        open_external: Callable[[str], object] | None = None,
        on_load_failed: Callable[[LoadFailure], object] | None = None,
        io_executor: Executor | None = None,
    ) -> None:
        self.factory = factory
        self.vault = vault
        self.settings = settings or SurfaceSettings()
        self.redirect_limit = redirect_limit
        self._open_external = open_external or _open_external_default
        self._on_load_failed = on_load_failed
        self._owns_io = io_executor is None
        self._io = io_executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="contentgate-cookies")

        self.primary: BrowsingSurface | None = None
        self.auxiliary: list[BrowsingSurface] = []
        self._guards: dict[str, RedirectGuard] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Surface lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def surfaces(self) -> list[BrowsingSurface]:
        out = [self.primary] if self.primary is not None else []
        return [*out, *self.auxiliary]

    @property
    def topmost(self) -> BrowsingSurface | None:
        if self.auxiliary:
            return self.auxiliary[-1]
        return self.primary

    def find(self, surface_id: str) -> BrowsingSurface | None:
        for surface in self.surfaces:
            if surface.surface_id == surface_id:
                return surface
        return None

    def guard_for(self, surface: BrowsingSurface) -> RedirectGuard:
        guard = self._guards.get(surface.surface_id)
        if guard is None:
            guard = RedirectGuard(self.redirect_limit)
            self._guards[surface.surface_id] = guard
        return guard

    def load_primary(self, address: str) -> BrowsingSurface:
        if self.primary is None:
            surface = self.factory.create_surface()
            surface.configure(self.settings)
            self.guard_for(surface)
            # Cookies must be in place before the first request goes out.
            self.vault.restore(surface)
            self.primary = surface
        _LOGGER.info("primary_load surface=%s url=%s", self.primary.surface_id, redact_url(address))
        self.primary.load(address)
        return self.primary

    def reload(self) -> None:
        if self.primary is not None:
            self.primary.reload()

    def handle_popup_request(self, request: PopupRequest) -> BrowsingSurface | None:
        if request.target_frame is not None:
            return None
        surface = self.factory.create_surface(opener=self.primary, target_id=request.target_id)
        surface.configure(self.settings)
        self.guard_for(surface)
        self.auxiliary.append(surface)

        url = (request.url or "").strip()
        if url.lower() not in BLANK_ADDRESSES:
            surface.load(url)
        _LOGGER.info(
            "popup_opened surface=%s depth=%d url=%s", surface.surface_id, len(self.auxiliary), redact_url(url) or "-"
        )
        return surface

    def dismiss_top_auxiliary(self) -> BackAction:
        if self.auxiliary:
            surface = self.auxiliary.pop()
            self._destroy(surface)
            return BackAction.CLOSED_AUXILIARY
        if self.primary is not None and self.primary.can_go_back:
            self.primary.go_back()
            return BackAction.WENT_BACK
        return BackAction.NONE

    def handle_back_gesture(self, surface: BrowsingSurface) -> BackAction:
        """Left-edge swipe on `surface`: history back first, else close the pop-up."""
        top = self.topmost
        if top is None or surface.surface_id != top.surface_id:
            return BackAction.NONE
        if surface.can_go_back:
            surface.go_back()
            return BackAction.WENT_BACK
        if self.auxiliary:
            return self.dismiss_top_auxiliary()
        return BackAction.NONE

    def forget_surface(self, surface_id: str) -> None:
        """Drop a surface that the browser destroyed on its own (e.g. `window.close()`)."""
        self._guards.pop(surface_id, None)
        self.auxiliary = [s for s in self.auxiliary if s.surface_id != surface_id]
        if self.primary is not None and self.primary.surface_id == surface_id:
            self.primary = None

    def teardown(self) -> None:
        while self.auxiliary:
            self._destroy(self.auxiliary.pop())
        if self.primary is not None:
            self._destroy(self.primary)
            self.primary = None
        if self._owns_io:
            self._io.shutdown(wait=True)

    def _destroy(self, surface: BrowsingSurface) -> None:
        self._guards.pop(surface.surface_id, None)
        try:
            surface.close()
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("surface_close_failed surface=%s error=%s", surface.surface_id, exc)

    # ─────────────────────────────────────────────────────────────────────────
    # Surface callbacks
    # ─────────────────────────────────────────────────────────────────────────

    def on_navigation_decision(self, surface: BrowsingSurface, url: str | None) -> NavigationPolicy:
        if not url:
            return NavigationPolicy.ALLOW
        if is_web_scheme(url):
            self.guard_for(surface).remember_good(url)
            return NavigationPolicy.ALLOW
        try:
            self._open_external(url)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("external_open_failed url=%s error=%s", redact_url(url), exc)
        _LOGGER.info("navigation_external surface=%s url=%s", surface.surface_id, redact_url(url))
        return NavigationPolicy.CANCEL

    def on_server_redirect(self, surface: BrowsingSurface) -> RedirectVerdict:
        guard = self.guard_for(surface)
        verdict = guard.record_redirect()
        if verdict is RedirectVerdict.CONTINUE:
            self._schedule_snapshot(surface)
            return verdict

        surface.stop_loading()
        if verdict is RedirectVerdict.RECOVER and guard.last_good_url:
            surface.load(guard.last_good_url)
        return verdict

    def on_load_finished(self, surface: BrowsingSurface) -> None:
        try:
            surface.evaluate_script(VIEWPORT_LOCK_SCRIPT_SOURCE)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("viewport_lock_failed surface=%s error=%s", surface.surface_id, exc)

    def on_provisional_navigation_failed(self, surface: BrowsingSurface, error: NavigationError) -> LoadFailure | None:
        guard = self.guard_for(surface)
        if error.is_too_many_redirects and guard.last_good_url:
            _LOGGER.warning(
                "too_many_redirects surface=%s reload=%s", surface.surface_id, redact_url(guard.last_good_url)
            )
            surface.load(guard.last_good_url)
            return None

        failure = LoadFailure(surface_id=surface.surface_id, error=error, url=surface.url)
        _LOGGER.info("load_failed surface=%s code=%s", surface.surface_id, error.code)
        if self._on_load_failed is not None:
            try:
                self._on_load_failed(failure)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("load_failed_listener_failed")
        return failure

    def _schedule_snapshot(self, surface: BrowsingSurface) -> Future:
        return self._io.submit(self._snapshot, surface)

    def _snapshot(self, surface: BrowsingSurface) -> int:
        try:
            return self.vault.snapshot(surface)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("cookie_snapshot_failed surface=%s error=%s", surface.surface_id, exc)
            return 0


__all__ = [
    "BackAction",
    "BrowsingSurface",
    "ContentSessionManager",
    "LoadFailure",
    "NavigationError",
    "NavigationPolicy",
    "PopupRequest",
    "SurfaceFactory",
    "SurfaceSettings",
    "is_web_scheme",
]
