from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ENDPOINT = "https://config.example.invalid/config.php"
DEFAULT_REDIRECT_LIMIT = 70
DEFAULT_NOTIFICATION_COOLDOWN_S = 72 * 60 * 60

STALE_POLICY_USE_STALE = "use-stale"
STALE_POLICY_FORCE_FALLBACK = "force-fallback"

DEFAULT_BINARY_CANDIDATES: list[str] = [
    # Chromium first; snap builds ignore --user-data-dir so they go last.
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    "/snap/bin/chromium",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except ValueError:
        val = default
    return max(lo, min(val, hi))


@dataclass
class GateConfig:
    endpoint: str = DEFAULT_ENDPOINT
    state_path: str = "~/.contentgate/state.json"
    bundle_id: str = "com.example.app"
    store_id: str = ""
    platform: str = "iOS"
    firebase_project_id: str | None = None
    http_timeout: float = 10.0
    http_max_bytes: int = 1_000_000
    redirect_limit: int = DEFAULT_REDIRECT_LIMIT
    notification_cooldown_s: float = DEFAULT_NOTIFICATION_COOLDOWN_S
    stale_address_policy: str = STALE_POLICY_USE_STALE
    revisit_failure_fallback: bool = False
    reachability_host: str | None = None
    reachability_port: int = 443
    reachability_interval_s: float = 5.0
    binary_path: str = "google-chrome"
    profile_path: str = "~/.contentgate/browser-profile"
    cdp_port: int = 9333
    headless: bool = False
    extra_flags: list[str] = field(default_factory=list)

    @staticmethod
    def normalize_stale_policy(raw: str | None) -> str:
        policy = (raw or "").strip().lower()
        if policy in {"force-fallback", "force_fallback", "fallback", "strict"}:
            return STALE_POLICY_FORCE_FALLBACK
        return STALE_POLICY_USE_STALE

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("CONTENTGATE_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls) -> GateConfig:
        flags_raw = os.environ.get("CONTENTGATE_BROWSER_FLAGS", "")
        extra_flags = [flag.strip() for flag in flags_raw.split(",") if flag.strip()]
        firebase = (os.environ.get("CONTENTGATE_FIREBASE_PROJECT_ID") or "").strip() or None
        probe_host = (os.environ.get("CONTENTGATE_REACHABILITY_HOST") or "").strip() or None
        return cls(
            endpoint=os.environ.get("CONTENTGATE_ENDPOINT", DEFAULT_ENDPOINT),
            state_path=expand_path(os.environ.get("CONTENTGATE_STATE_PATH", "~/.contentgate/state.json")),
            bundle_id=os.environ.get("CONTENTGATE_BUNDLE_ID", "com.example.app"),
            store_id=os.environ.get("CONTENTGATE_STORE_ID", ""),
            platform=os.environ.get("CONTENTGATE_PLATFORM", "iOS"),
            firebase_project_id=firebase,
            http_timeout=_float_env("CONTENTGATE_HTTP_TIMEOUT", default=10.0, lo=0.5, hi=120.0),
            http_max_bytes=int(os.environ.get("CONTENTGATE_HTTP_MAX_BYTES", "1000000")),
            redirect_limit=int(os.environ.get("CONTENTGATE_REDIRECT_LIMIT", str(DEFAULT_REDIRECT_LIMIT))),
            notification_cooldown_s=_float_env(
                "CONTENTGATE_NOTIFICATION_COOLDOWN",
                default=DEFAULT_NOTIFICATION_COOLDOWN_S,
                lo=0.0,
                hi=30 * 24 * 60 * 60,
            ),
            stale_address_policy=cls.normalize_stale_policy(os.environ.get("CONTENTGATE_STALE_POLICY")),
            revisit_failure_fallback=_bool_env("CONTENTGATE_REVISIT_FAILURE_FALLBACK", default=False),
            reachability_host=probe_host,
            reachability_port=int(os.environ.get("CONTENTGATE_REACHABILITY_PORT", "443")),
            reachability_interval_s=_float_env(
                "CONTENTGATE_REACHABILITY_INTERVAL", default=5.0, lo=0.2, hi=300.0
            ),
            binary_path=cls.detect_binary(),
            profile_path=expand_path(os.environ.get("CONTENTGATE_BROWSER_PROFILE", "~/.contentgate/browser-profile")),
            cdp_port=int(os.environ.get("CONTENTGATE_CDP_PORT", "9333")),
            headless=_bool_env("CONTENTGATE_HEADLESS", default=False),
            extra_flags=extra_flags,
        )

    def probe_address(self) -> tuple[str, int]:
        """Host/port the reachability probe connects to (defaults to the config endpoint)."""
        if self.reachability_host:
            return self.reachability_host, self.reachability_port
        from urllib.parse import urlsplit

        parts = urlsplit(self.endpoint)
        host = parts.hostname or "127.0.0.1"
        port = parts.port or (80 if parts.scheme == "http" else 443)
        return host, port
