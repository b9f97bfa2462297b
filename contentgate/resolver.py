"""Launch-mode resolver.

Decides, once per process start, whether the client shows remote content
(WEBVIEW) or the local fallback surface (FALLBACK), and keeps that decision in
sync with connectivity afterwards (OFFLINE).

Every inbound signal has its own intake method. Intakes never run inline: they are
queued on a single worker thread, so a late attribution callback can never race an
in-flight configuration request and at most one request is ever outstanding. Each
intake returns the `Future` of its processing step.

Failures never escape. Transport errors and malformed responses end in WEBVIEW or
FALLBACK; store writes are best-effort, so an unwritable state file only costs
persistence of this run's decision.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any

from .attribution import AttributionGate
from .config import STALE_POLICY_FORCE_FALLBACK, GateConfig
from .http_client import HttpClientError
from .models import (
    FallbackReason,
    LaunchDecision,
    LaunchMode,
    NotificationAskRecord,
    PermissionOutcome,
    ResolverState,
)
from .redaction import redact_url
from .remote_config import ConfigClient, ConfigQuery, preferred_locale
from .store import KeyValueStore, StoreKeys, get_bool, get_str

_LOGGER = logging.getLogger("contentgate.resolver")

StateListener = Callable[[ResolverState, "LaunchDecision | None"], object]

_SOURCE_QUERY = "query"
_SOURCE_STORED = "stored"
_SOURCE_OVERRIDE = "override"


class ConfigResolver:
    def __init__(
        self,
        config: GateConfig,
        store: KeyValueStore,
        client: ConfigClient,
        *,
        gate: AttributionGate | None = None,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.time,
        locale_code: str | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.client = client
        self.gate = gate or AttributionGate()
        self._clock = clock
        self._locale = locale_code
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="contentgate-resolver")
        self._listeners: list[StateListener] = []

        # Captured at process start: writes made during this run must not flip it.
        self._first_launch = not get_bool(store, StoreKeys.HAS_LAUNCHED)

        self._state = ResolverState.LOADING
        self._decision: LaunchDecision | None = None
        self._current_url: str | None = None
        self._webview_source: str | None = None
        self._connected: bool | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Read-only view
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ResolverState:
        return self._state

    @property
    def decision(self) -> LaunchDecision | None:
        return self._decision

    @property
    def current_url(self) -> str | None:
        return self._current_url

    @property
    def first_launch(self) -> bool:
        return self._first_launch

    @property
    def should_prompt(self) -> bool:
        """True while the resolver waits for a push-permission outcome."""
        return self._state is ResolverState.AWAITING_PERMISSION_DECISION

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    # ─────────────────────────────────────────────────────────────────────────
    # Intake (one method per signal)
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> Future:
        return self._submit(self._start)

    def on_attribution(self, fields: Mapping[str, Any]) -> Future:
        return self._submit(self._handle_attribution, dict(fields))

    def on_attribution_failed(self, error: object = None) -> Future:
        return self._submit(self._handle_attribution_failed, error)

    def on_push_token(self, token: str) -> Future:
        return self._submit(self._handle_push_token, token)

    def on_connectivity(self, satisfied: bool) -> Future:
        return self._submit(self._handle_connectivity, bool(satisfied))

    def on_deep_link(self, url: str) -> Future:
        return self._submit(self._handle_deep_link, url)

    def supply_permission_outcome(self, outcome: PermissionOutcome) -> Future:
        return self._submit(self._handle_permission, outcome)

    def flush(self) -> Future:
        """Future completed once every previously submitted event was processed."""
        return self._submit(lambda: None)

    def close(self, *, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    # ─────────────────────────────────────────────────────────────────────────
    # Worker-side handlers
    # ─────────────────────────────────────────────────────────────────────────

    def _submit(self, fn: Callable[..., object], *args: Any) -> Future:
        return self._executor.submit(self._guarded, fn, *args)

    def _guarded(self, fn: Callable[..., object], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("resolver_step_failed step=%s", getattr(fn, "__name__", fn))
            if self._state is ResolverState.QUERYING or (
                self._state is ResolverState.RESOLVING_ATTRIBUTION and self.gate.outcome is not None
            ):
                self._recover_terminal()

    def _recover_terminal(self) -> None:
        try:
            self._resolve_failure()
        except Exception:  # noqa: BLE001
            _LOGGER.exception("resolver_recovery_failed")
            self._enter_fallback(LaunchDecision.fallback(FallbackReason.FAILURE), persist=False)

    def _start(self) -> None:
        if self._state is ResolverState.LOADING:
            self._set_state(ResolverState.RESOLVING_ATTRIBUTION)

    def _handle_attribution(self, fields: dict[str, Any]) -> None:
        if self.gate.receive_success(fields):
            self._resolve()

    def _handle_attribution_failed(self, error: object) -> None:
        if self.gate.receive_failure(error):
            self._resolve()

    def _resolve(self) -> None:
        if self._state not in {ResolverState.LOADING, ResolverState.RESOLVING_ATTRIBUTION}:
            return
        self._set_state(ResolverState.RESOLVING_ATTRIBUTION)

        prior = LaunchDecision.load(self.store)
        if prior is not None and prior.mode is LaunchMode.FALLBACK and self._fallback_is_sticky(prior):
            _LOGGER.info("resolve rule=sticky_fallback reason=%s", prior.fallback_reason)
            self._enter_fallback(prior, persist=False)
            return

        if self.gate.implies_organic_fallback(first_launch=self._first_launch):
            _LOGGER.info("resolve rule=organic_first_launch")
            self._enter_fallback(LaunchDecision.fallback(FallbackReason.ORGANIC), persist=True)
            return

        override = get_str(self.store, StoreKeys.TEMP_URL)
        if override:
            self._erase(StoreKeys.TEMP_URL)
            _LOGGER.info("resolve rule=override url=%s", redact_url(override))
            self._enter_webview(override, source=_SOURCE_OVERRIDE)
            return

        if self._needs_permission_prompt():
            _LOGGER.info("resolve rule=await_permission")
            self._set_state(ResolverState.AWAITING_PERMISSION_DECISION)
            return

        self._query()

    def _fallback_is_sticky(self, prior: LaunchDecision) -> bool:
        if prior.fallback_reason is FallbackReason.FAILURE and self.config.revisit_failure_fallback:
            return False
        return True

    def _needs_permission_prompt(self) -> bool:
        if get_bool(self.store, StoreKeys.ACCEPTED_NOTIFICATIONS):
            return False
        if get_bool(self.store, StoreKeys.DECLINED_NOTIFICATIONS):
            return False
        record = NotificationAskRecord.load(self.store)
        return not record.in_cooldown(self.config.notification_cooldown_s, now=self._clock())

    def _handle_permission(self, outcome: PermissionOutcome) -> None:
        if self._state is not ResolverState.AWAITING_PERMISSION_DECISION:
            _LOGGER.info("permission_outcome_ignored state=%s", self._state.value)
            return
        if outcome is PermissionOutcome.FAILED:
            _LOGGER.info("permission_request_failed treated_as=declined")
            outcome = PermissionOutcome.DECLINED

        if outcome is PermissionOutcome.GRANTED:
            self._write(StoreKeys.ACCEPTED_NOTIFICATIONS, True)
        elif outcome is PermissionOutcome.DECLINED:
            self._write(StoreKeys.ACCEPTED_NOTIFICATIONS, False)
            self._write(StoreKeys.DECLINED_NOTIFICATIONS, True)
        else:
            self._write(StoreKeys.LAST_NOTIFICATION_ASK, self._clock())
        _LOGGER.info("permission_outcome outcome=%s", outcome.value)
        self._query()

    def _query(self) -> None:
        self._set_state(ResolverState.QUERYING)
        try:
            response = self.client.fetch(self._build_query())
        except HttpClientError as exc:
            _LOGGER.warning("config_query_failed error=%s", exc)
            self._resolve_failure()
            return

        if response.enabled and response.url:
            decision = LaunchDecision.webview(response.url, response.expires)
            self._save(decision)
            self._enter_webview(response.url, source=_SOURCE_QUERY, decision=decision)
            return

        _LOGGER.info("config_disabled")
        self._enter_fallback(LaunchDecision.fallback(FallbackReason.DISABLED), persist=True)

    def _resolve_failure(self) -> None:
        prior = LaunchDecision.load(self.store)
        if prior is not None and prior.mode is LaunchMode.WEBVIEW and prior.url:
            if self.config.stale_address_policy != STALE_POLICY_FORCE_FALLBACK or not prior.is_expired(self._clock()):
                _LOGGER.info(
                    "resolve rule=stored_address expired=%s url=%s",
                    prior.is_expired(self._clock()),
                    redact_url(prior.url),
                )
                self._enter_webview(prior.url, source=_SOURCE_STORED, decision=prior)
                return
        self._enter_fallback(LaunchDecision.fallback(FallbackReason.FAILURE), persist=True)

    def _build_query(self) -> ConfigQuery:
        return ConfigQuery(
            af_id=self._device_id(),
            bundle_id=self.config.bundle_id,
            os=self.config.platform,
            store_id=self.config.store_id,
            locale=self._locale or preferred_locale(),
            attribution=self.gate.snapshot,
            push_token=get_str(self.store, StoreKeys.PUSH_TOKEN),
            firebase_project_id=self.config.firebase_project_id,
        )

    def _device_id(self) -> str:
        device_id = get_str(self.store, StoreKeys.DEVICE_ID)
        if device_id is None:
            device_id = uuid.uuid4().hex
            self._write(StoreKeys.DEVICE_ID, device_id)
        return device_id

    def _handle_push_token(self, token: str) -> None:
        if not isinstance(token, str) or not token.strip():
            return
        self._write(StoreKeys.PUSH_TOKEN, token.strip())
        _LOGGER.info("push_token_updated")

    def _handle_deep_link(self, url: str) -> None:
        if not isinstance(url, str) or not url.strip():
            return
        url = url.strip()
        self._write(StoreKeys.TEMP_URL, url)
        _LOGGER.info("deep_link_received url=%s state=%s", redact_url(url), self._state.value)
        if self._state in {ResolverState.WEBVIEW, ResolverState.OFFLINE}:
            self._erase(StoreKeys.TEMP_URL)
            self._enter_webview(url, source=_SOURCE_OVERRIDE)

    def _handle_connectivity(self, satisfied: bool) -> None:
        if self._connected is satisfied:
            return
        self._connected = satisfied
        if not satisfied:
            if self._state is ResolverState.WEBVIEW:
                self._set_state(ResolverState.OFFLINE)
            return
        if self._state is not ResolverState.OFFLINE:
            return
        if self._webview_source == _SOURCE_OVERRIDE and self._current_url:
            self._set_state(ResolverState.WEBVIEW)
            return
        self._query()

    # ─────────────────────────────────────────────────────────────────────────
    # Terminal transitions
    # ─────────────────────────────────────────────────────────────────────────

    def _enter_webview(self, url: str, *, source: str, decision: LaunchDecision | None = None) -> None:
        self._current_url = url
        self._webview_source = source
        self._decision = decision or LaunchDecision.webview(url)
        target = ResolverState.OFFLINE if self._connected is False else ResolverState.WEBVIEW
        self._set_state(target, force=True)

    def _enter_fallback(self, decision: LaunchDecision, *, persist: bool) -> None:
        if persist:
            self._save(decision)
        self._decision = decision
        self._current_url = None
        self._webview_source = None
        self._set_state(ResolverState.FALLBACK)

    # ─────────────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────────────

    def _save(self, decision: LaunchDecision) -> None:
        try:
            decision.save(self.store)
        except OSError as exc:
            _LOGGER.warning("decision_persist_failed mode=%s error=%s", decision.mode.value, exc)

    def _write(self, key: str, value: Any) -> None:
        try:
            self.store.set(key, value)
        except OSError as exc:
            _LOGGER.warning("state_persist_failed key=%s error=%s", key, exc)

    def _erase(self, key: str) -> None:
        try:
            self.store.remove(key)
        except OSError as exc:
            _LOGGER.warning("state_persist_failed key=%s error=%s", key, exc)

    def _set_state(self, state: ResolverState, *, force: bool = False) -> None:
        if state is self._state and not force:
            return
        previous = self._state
        self._state = state
        _LOGGER.info("state_changed from=%s to=%s", previous.value, state.value)
        for listener in list(self._listeners):
            try:
                listener(state, self._decision)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("resolver_listener_failed")


__all__ = ["ConfigResolver", "StateListener"]
