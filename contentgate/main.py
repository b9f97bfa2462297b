"""
Command-line entry point.

`run` resolves the launch mode for this start and, in WebView mode, hosts the
remote content in a local Chromium through the content session manager.
`status` and `reset` inspect or wipe the persisted launch state.
"""

from __future__ import annotations

import argparse
import json
import logging
import queue
import sys
from pathlib import Path
from typing import Any, TextIO

from .cdp import CdpEventPump, CdpSurfaceFactory
from .config import GateConfig
from .cookie_vault import CookieVault
from .http_client import HttpClientError
from .launcher import BrowserLauncher
from .models import LaunchDecision, PermissionOutcome, ResolverState
from .reachability import ReachabilityMonitor, tcp_probe
from .redaction import redact_url
from .remote_config import ConfigClient, RemoteConfigClient
from .resolver import ConfigResolver
from .session_manager import ContentSessionManager, LoadFailure
from .store import JsonFileStore, KeyValueStore, StoreKeys

logger = logging.getLogger("contentgate")

FALLBACK_NOTICE = "Remote content is not available for this install; showing the local experience."
OFFLINE_NOTICE = "No internet connection. Content will resume when the connection is back."

_PERMISSION_CHOICES = {
    "grant": PermissionOutcome.GRANTED,
    "decline": PermissionOutcome.DECLINED,
    "skip": PermissionOutcome.SKIPPED,
}


def load_attribution(path: str) -> dict[str, Any]:
    """Read an attribution payload (a flat JSON object) from disk."""
    raw = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("attribution file must contain a JSON object")
    return raw


def ask_permission(stdin: TextIO, stdout: TextIO) -> PermissionOutcome:
    stdout.write("Allow notifications? [y]es / [n]o / [s]kip: ")
    stdout.flush()
    line = stdin.readline()
    if not line:
        return PermissionOutcome.FAILED
    answer = line.strip().lower()
    if answer in {"y", "yes"}:
        return PermissionOutcome.GRANTED
    if answer in {"n", "no"}:
        return PermissionOutcome.DECLINED
    return PermissionOutcome.SKIPPED


class ContentGateApp:
    """Wires the resolver, the connectivity monitor and the content session together."""

    def __init__(
        self,
        config: GateConfig,
        *,
        store: KeyValueStore | None = None,
        client: ConfigClient | None = None,
        launcher: BrowserLauncher | None = None,
        monitor: ReachabilityMonitor | None = None,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self.config = config
        self.store = store if store is not None else JsonFileStore(config.state_path)
        self.resolver = ConfigResolver(config, self.store, client or RemoteConfigClient(config))
        self.launcher = launcher or BrowserLauncher(config)
        if monitor is None:
            host, port = config.probe_address()
            monitor = ReachabilityMonitor(tcp_probe(host, port), interval_s=config.reachability_interval_s)
        self.monitor = monitor
        self.monitor.set_listener(self.resolver.on_connectivity)
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout

        self.manager: ContentSessionManager | None = None
        self.pump: CdpEventPump | None = None
        self._events: queue.Queue[tuple[ResolverState, LaunchDecision | None]] = queue.Queue()
        self.resolver.add_listener(lambda state, decision: self._events.put((state, decision)))

    def _say(self, text: str) -> None:
        self.stdout.write(text + "\n")
        self.stdout.flush()

    # ─────────────────────────────────────────────────────────────────────────
    # Content session
    # ─────────────────────────────────────────────────────────────────────────

    def _on_load_failed(self, failure: LoadFailure) -> None:
        logger.warning("content_load_failed surface=%s code=%s", failure.surface_id, failure.error.code)

    def show_content(self, url: str) -> bool:
        if self.manager is None:
            result = self.launcher.ensure_running()
            if not result.started and not self.launcher.cdp_ready():
                logger.error("browser_unavailable message=%s", result.message)
                return False
            factory = CdpSurfaceFactory(self.config.cdp_port)
            try:
                factory.ensure_browser_connection()
            except HttpClientError as exc:
                logger.error("browser_connect_failed error=%s", exc)
                return False
            self.manager = ContentSessionManager(
                factory,
                CookieVault(self.store),
                redirect_limit=self.config.redirect_limit,
                on_load_failed=self._on_load_failed,
            )
            self.pump = CdpEventPump(self.manager, factory)

        if self.pump is not None and self.pump.running:
            # Surface callbacks belong to the pump thread once it runs.
            self.pump.call_soon(self._navigate, url)
        else:
            self._navigate(url)
            if self.pump is not None:
                self.pump.start()
        logger.info("content_shown url=%s", redact_url(url))
        return True

    def _navigate(self, url: str) -> None:
        if self.manager is None:
            return
        primary = self.manager.primary
        if primary is not None and primary.url == url:
            self.manager.reload()
        else:
            self.manager.load_primary(url)

    def _session_closed(self) -> bool:
        return self.manager is not None and self.manager.primary is None

    # ─────────────────────────────────────────────────────────────────────────
    # Run loop
    # ─────────────────────────────────────────────────────────────────────────

    def run(
        self,
        *,
        attribution: dict[str, Any] | None = None,
        deep_link: str | None = None,
        push_token: str | None = None,
        permission: PermissionOutcome | None = None,
        wait_timeout: float = 0.5,
        exit_on_terminal: bool = False,
    ) -> int:
        self.resolver.start()
        self.monitor.start()
        if push_token:
            self.resolver.on_push_token(push_token)
        if deep_link:
            self.resolver.on_deep_link(deep_link)
        if attribution is not None:
            self.resolver.on_attribution(attribution)
        else:
            self.resolver.on_attribution_failed("no attribution data")

        try:
            while True:
                try:
                    state, decision = self._events.get(timeout=wait_timeout)
                except queue.Empty:
                    if self._session_closed():
                        logger.info("content_session_closed")
                        return 0
                    continue

                if state is ResolverState.AWAITING_PERMISSION_DECISION:
                    outcome = permission or ask_permission(self.stdin, self.stdout)
                    self.resolver.supply_permission_outcome(outcome)
                elif state is ResolverState.FALLBACK:
                    self._say(FALLBACK_NOTICE)
                    return 0
                elif state is ResolverState.OFFLINE:
                    self._say(OFFLINE_NOTICE)
                elif state is ResolverState.WEBVIEW:
                    url = decision.url if decision is not None else self.resolver.current_url
                    if not url:
                        continue
                    if exit_on_terminal:
                        self._say(url)
                        return 0
                    if not self.show_content(url):
                        return 1
        except KeyboardInterrupt:
            return 130
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.monitor.stop()
        if self.pump is not None:
            self.pump.close()
        if self.manager is not None:
            self.manager.teardown()
        self.launcher.stop()
        self.resolver.close(wait=False)


def status_payload(store: KeyValueStore) -> dict[str, Any]:
    decision = LaunchDecision.load(store)
    return {
        "decision": decision.to_dict() if decision is not None else None,
        "hasLaunched": bool(store.get(StoreKeys.HAS_LAUNCHED, False)),
        "pendingDeepLink": store.get(StoreKeys.TEMP_URL) is not None,
        "notifications": {
            "accepted": store.get(StoreKeys.ACCEPTED_NOTIFICATIONS),
            "declined": store.get(StoreKeys.DECLINED_NOTIFICATIONS),
            "lastAsk": store.get(StoreKeys.LAST_NOTIFICATION_ASK),
        },
        "pushToken": store.get(StoreKeys.PUSH_TOKEN) is not None,
        "storedCookieDomains": len(store.get(StoreKeys.STORED_COOKIES) or {}),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="contentgate", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--state", help="state file (default: $CONTENTGATE_STATE_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="resolve the launch mode and host the content")
    run.add_argument("--attribution", metavar="FILE", help="attribution payload (JSON object)")
    run.add_argument("--deep-link", help="address delivered by a push notification")
    run.add_argument("--push-token", help="push registration token")
    run.add_argument("--permission", choices=sorted(_PERMISSION_CHOICES), help="answer the notification prompt")
    run.add_argument("--print-url", action="store_true", help="print the resolved address instead of opening it")

    sub.add_parser("status", help="print the persisted launch state as JSON")
    sub.add_parser("reset", help="delete the persisted launch state")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    args = build_parser().parse_args(argv)
    config = GateConfig.from_env()
    if args.state:
        config.state_path = str(Path(args.state).expanduser())

    if args.command == "status":
        print(json.dumps(status_payload(JsonFileStore(config.state_path)), indent=2, sort_keys=True))
        return 0
    if args.command == "reset":
        JsonFileStore(config.state_path).clear()
        logger.info("state_reset path=%s", config.state_path)
        return 0

    attribution: dict[str, Any] | None = None
    if args.attribution:
        try:
            attribution = load_attribution(args.attribution)
        except (OSError, ValueError) as exc:
            logger.warning("attribution_unreadable path=%s error=%s", args.attribution, exc)

    app = ContentGateApp(config)
    return app.run(
        attribution=attribution,
        deep_link=args.deep_link,
        push_token=args.push_token,
        permission=_PERMISSION_CHOICES.get(args.permission) if args.permission else None,
        exit_on_terminal=args.print_url,
    )


if __name__ == "__main__":
    sys.exit(main())
