from __future__ import annotations

from concurrent.futures import Executor, Future
from typing import Any

import pytest

NOW = 1_700_000_000.0


class _InlineExecutor(Executor):
    def submit(self, fn, /, *args, **kwargs):  # type: ignore[override]
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:  # noqa: BLE001
            future.set_exception(exc)
        return future


class _FakeClient:
    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.payloads: list[dict[str, Any]] = []

    def fetch(self, query):
        self.payloads.append(query.to_payload())
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _ok(url: str = "https://content.example/home", expires: float = NOW + 3600):
    from contentgate.remote_config import ConfigResponse

    return ConfigResponse(enabled=True, url=url, expires=expires)


def _disabled():
    from contentgate.remote_config import ConfigResponse

    return ConfigResponse(enabled=False)


def _resolver(store, client, **overrides: Any):
    from contentgate.config import GateConfig
    from contentgate.resolver import ConfigResolver

    config = GateConfig(**overrides)
    resolver = ConfigResolver(
        config, store, client, executor=_InlineExecutor(), clock=lambda: NOW, locale_code="EN"
    )
    states: list = []
    resolver.add_listener(lambda state, decision: states.append(state))
    resolver.start()
    return resolver, states


NON_ORGANIC = {"af_status": "Non-organic", "media_source": "ads", "campaign": "spring"}


def test_first_launch_prompts_before_querying_then_shows_content() -> None:
    from contentgate.models import PermissionOutcome, ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore()
    client = _FakeClient(_ok())
    resolver, states = _resolver(store, client)

    assert resolver.first_launch is True
    resolver.on_attribution(NON_ORGANIC)
    assert resolver.state is ResolverState.AWAITING_PERMISSION_DECISION
    assert resolver.should_prompt is True
    assert client.payloads == []

    resolver.supply_permission_outcome(PermissionOutcome.GRANTED)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/home"
    assert store.get(StoreKeys.APP_MODE) == "WebView"
    assert store.get(StoreKeys.SAVED_URL) == "https://content.example/home"
    assert store.get(StoreKeys.SAVED_EXPIRES) == NOW + 3600
    assert store.get(StoreKeys.HAS_LAUNCHED) is True
    assert store.get(StoreKeys.ACCEPTED_NOTIFICATIONS) is True
    assert states[-3:] == [
        ResolverState.AWAITING_PERMISSION_DECISION,
        ResolverState.QUERYING,
        ResolverState.WEBVIEW,
    ]


def test_query_payload_carries_attribution_identity_and_push_token() -> None:
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client, bundle_id="com.acme.app", store_id="id123", firebase_project_id="proj")

    resolver.on_push_token("tok-1")
    resolver.on_attribution({**NON_ORGANIC, "adset": "a1"})

    assert len(client.payloads) == 1
    payload = client.payloads[0]
    assert payload["af_status"] == "Non-organic"
    assert payload["adset"] == "a1"
    assert payload["bundle_id"] == "com.acme.app"
    assert payload["store_id"] == "id123"
    assert payload["os"] == "iOS"
    assert payload["locale"] == "EN"
    assert payload["push_token"] == "tok-1"
    assert payload["firebase_project_id"] == "proj"
    assert payload["af_id"] == store.get(StoreKeys.DEVICE_ID)


def test_push_token_never_triggers_a_query_by_itself() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client)

    resolver.on_attribution(NON_ORGANIC)
    resolver.on_push_token("late-token")

    assert resolver.state is ResolverState.WEBVIEW
    assert len(client.payloads) == 1
    assert store.get(StoreKeys.PUSH_TOKEN) == "late-token"


def test_organic_first_launch_falls_back_and_stays_there() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore()
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client)
    resolver.on_attribution({"af_status": "Organic"})

    assert resolver.state is ResolverState.FALLBACK
    assert store.get(StoreKeys.APP_MODE) == "Fallback"
    assert store.get(StoreKeys.FALLBACK_REASON) == "organic"
    assert client.payloads == []

    again, _ = _resolver(store, client)
    assert again.first_launch is False
    again.on_attribution(NON_ORGANIC)
    assert again.state is ResolverState.FALLBACK
    assert client.payloads == []


def test_organic_install_on_later_launch_still_queries() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore(
        {
            StoreKeys.HAS_LAUNCHED: True,
            StoreKeys.APP_MODE: "WebView",
            StoreKeys.SAVED_URL: "https://content.example/old",
            StoreKeys.ACCEPTED_NOTIFICATIONS: True,
        }
    )
    client = _FakeClient(_ok("https://content.example/new"))
    resolver, _ = _resolver(store, client)
    resolver.on_attribution({"af_status": "organic"})

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/new"
    assert len(client.payloads) == 1


def test_disabled_response_persists_fallback() -> None:
    from contentgate.models import FallbackReason, LaunchDecision, LaunchMode, ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    resolver, _ = _resolver(store, _FakeClient(_disabled()))
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.FALLBACK
    decision = LaunchDecision.load(store)
    assert decision is not None
    assert decision.mode is LaunchMode.FALLBACK
    assert decision.fallback_reason is FallbackReason.DISABLED


def test_malformed_response_reuses_stored_address_even_when_expired() -> None:
    from contentgate.models import ResolverState
    from contentgate.remote_config import MalformedResponseError
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore(
        {
            StoreKeys.HAS_LAUNCHED: True,
            StoreKeys.APP_MODE: "WebView",
            StoreKeys.SAVED_URL: "https://content.example/saved",
            StoreKeys.SAVED_EXPIRES: NOW - 10,
            StoreKeys.ACCEPTED_NOTIFICATIONS: True,
        }
    )
    resolver, _ = _resolver(store, _FakeClient(MalformedResponseError("bad body")))
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/saved"
    assert store.get(StoreKeys.APP_MODE) == "WebView"


def test_force_fallback_policy_rejects_expired_stored_address() -> None:
    from contentgate.http_client import HttpClientError
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore(
        {
            StoreKeys.HAS_LAUNCHED: True,
            StoreKeys.APP_MODE: "WebView",
            StoreKeys.SAVED_URL: "https://content.example/saved",
            StoreKeys.SAVED_EXPIRES: NOW - 10,
            StoreKeys.ACCEPTED_NOTIFICATIONS: True,
        }
    )
    resolver, _ = _resolver(store, _FakeClient(HttpClientError("timed out")), stale_address_policy="force-fallback")
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.FALLBACK
    assert store.get(StoreKeys.FALLBACK_REASON) == "failure"


def test_force_fallback_policy_still_uses_unexpired_address() -> None:
    from contentgate.http_client import HttpClientError
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore(
        {
            StoreKeys.HAS_LAUNCHED: True,
            StoreKeys.APP_MODE: "WebView",
            StoreKeys.SAVED_URL: "https://content.example/saved",
            StoreKeys.SAVED_EXPIRES: NOW + 10,
            StoreKeys.ACCEPTED_NOTIFICATIONS: True,
        }
    )
    resolver, _ = _resolver(store, _FakeClient(HttpClientError("503")), stale_address_policy="force-fallback")
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/saved"


@pytest.mark.parametrize(("revisit", "expected_queries"), [(False, 1), (True, 2)])
def test_failure_fallback_is_revisited_only_when_configured(revisit: bool, expected_queries: int) -> None:
    from contentgate.http_client import HttpClientError
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(HttpClientError("down"), _ok())
    first, _ = _resolver(store, client, revisit_failure_fallback=revisit)
    first.on_attribution(NON_ORGANIC)
    assert first.state is ResolverState.FALLBACK

    second, _ = _resolver(store, client, revisit_failure_fallback=revisit)
    second.on_attribution(NON_ORGANIC)

    assert len(client.payloads) == expected_queries
    assert second.state is (ResolverState.WEBVIEW if revisit else ResolverState.FALLBACK)


def test_override_address_is_used_once_without_querying() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.TEMP_URL: "https://content.example/promo"})
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client)
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/promo"
    assert store.get(StoreKeys.TEMP_URL) is None
    assert client.payloads == []


def test_deep_link_before_resolution_becomes_the_override() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore

    client = _FakeClient(_ok())
    resolver, _ = _resolver(MemoryStore(), client)
    resolver.on_deep_link("https://content.example/from-push")
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/from-push"
    assert client.payloads == []


def test_deep_link_while_showing_content_switches_address() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    resolver, states = _resolver(store, _FakeClient(_ok()))
    resolver.on_attribution(NON_ORGANIC)
    seen = len(states)

    resolver.on_deep_link("https://content.example/offer")

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/offer"
    assert store.get(StoreKeys.TEMP_URL) is None
    assert states[seen:] == [ResolverState.WEBVIEW]


def test_notification_prompt_respects_cooldown() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    recent = MemoryStore({StoreKeys.LAST_NOTIFICATION_ASK: NOW - 3600})
    resolver, _ = _resolver(recent, _FakeClient(_ok()))
    resolver.on_attribution(NON_ORGANIC)
    assert resolver.state is ResolverState.WEBVIEW

    stale = MemoryStore({StoreKeys.LAST_NOTIFICATION_ASK: NOW - 73 * 3600})
    resolver, _ = _resolver(stale, _FakeClient(_ok()))
    resolver.on_attribution(NON_ORGANIC)
    assert resolver.state is ResolverState.AWAITING_PERMISSION_DECISION


def test_declined_permission_is_never_asked_again() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.DECLINED_NOTIFICATIONS: True})
    resolver, _ = _resolver(store, _FakeClient(_ok()))
    resolver.on_attribution(NON_ORGANIC)
    assert resolver.state is ResolverState.WEBVIEW


def test_skipped_permission_records_ask_time() -> None:
    from contentgate.models import PermissionOutcome, ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore()
    resolver, _ = _resolver(store, _FakeClient(_ok()))
    resolver.on_attribution(NON_ORGANIC)
    resolver.supply_permission_outcome(PermissionOutcome.SKIPPED)

    assert resolver.state is ResolverState.WEBVIEW
    assert store.get(StoreKeys.LAST_NOTIFICATION_ASK) == NOW
    assert store.get(StoreKeys.ACCEPTED_NOTIFICATIONS) is None


def test_failed_permission_request_counts_as_declined() -> None:
    from contentgate.models import PermissionOutcome, ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore()
    resolver, _ = _resolver(store, _FakeClient(_ok()))
    resolver.on_attribution(NON_ORGANIC)
    resolver.supply_permission_outcome(PermissionOutcome.FAILED)

    assert resolver.state is ResolverState.WEBVIEW
    assert store.get(StoreKeys.ACCEPTED_NOTIFICATIONS) is False
    assert store.get(StoreKeys.DECLINED_NOTIFICATIONS) is True


def test_permission_outcome_outside_prompt_is_ignored() -> None:
    from contentgate.models import PermissionOutcome, ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client)
    resolver.on_attribution(NON_ORGANIC)
    resolver.supply_permission_outcome(PermissionOutcome.DECLINED)

    assert resolver.state is ResolverState.WEBVIEW
    assert len(client.payloads) == 1
    assert store.get(StoreKeys.DECLINED_NOTIFICATIONS) is None


def test_only_the_first_attribution_outcome_counts() -> None:
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client)
    resolver.on_attribution(NON_ORGANIC)
    resolver.on_attribution({"af_status": "Organic"})
    resolver.on_attribution_failed("late")

    assert len(client.payloads) == 1


def test_attribution_failure_on_first_launch_still_queries() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client)
    resolver.on_attribution_failed("sdk timeout")

    assert resolver.state is ResolverState.WEBVIEW
    assert "af_status" not in client.payloads[0]


def test_connection_lost_before_resolution_lands_offline_then_requeries() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(_ok("https://content.example/a"), _ok("https://content.example/b"))
    resolver, _ = _resolver(store, client)
    resolver.on_connectivity(False)
    resolver.on_attribution(NON_ORGANIC)
    assert resolver.state is ResolverState.OFFLINE

    resolver.on_connectivity(True)
    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/b"
    assert len(client.payloads) == 2


def test_repeated_connectivity_signals_are_idempotent() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client)
    resolver.on_connectivity(True)
    resolver.on_attribution(NON_ORGANIC)
    resolver.on_connectivity(True)
    resolver.on_connectivity(False)
    resolver.on_connectivity(False)
    assert resolver.state is ResolverState.OFFLINE

    resolver.on_connectivity(True)
    resolver.on_connectivity(True)
    assert resolver.state is ResolverState.WEBVIEW
    assert len(client.payloads) == 2


def test_reconnect_after_override_returns_to_same_address() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.TEMP_URL: "https://content.example/promo"})
    client = _FakeClient(_ok())
    resolver, _ = _resolver(store, client)
    resolver.on_connectivity(True)
    resolver.on_attribution(NON_ORGANIC)
    resolver.on_connectivity(False)
    resolver.on_connectivity(True)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/promo"
    assert client.payloads == []


def test_unexpected_client_error_still_ends_in_a_terminal_state() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    resolver, _ = _resolver(store, _FakeClient(RuntimeError("boom")))
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.FALLBACK


def test_listener_errors_do_not_break_resolution() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    resolver, _ = _resolver(store, _FakeClient(_ok()))

    def _broken(state, decision) -> None:
        raise ValueError("listener bug")

    resolver.add_listener(_broken)
    resolver.on_attribution(NON_ORGANIC)
    assert resolver.state is ResolverState.WEBVIEW


def test_real_executor_serialises_intakes() -> None:
    from contentgate.config import GateConfig
    from contentgate.models import ResolverState
    from contentgate.resolver import ConfigResolver
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore({StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    client = _FakeClient(_ok())
    resolver = ConfigResolver(GateConfig(), store, client, clock=lambda: NOW, locale_code="EN")
    try:
        resolver.start()
        resolver.on_push_token("tok")
        resolver.on_attribution(NON_ORGANIC)
        resolver.flush().result(timeout=5)
        assert resolver.state is ResolverState.WEBVIEW
        assert client.payloads[0]["push_token"] == "tok"
    finally:
        resolver.close()


class _UnwritableStore:
    """MemoryStore whose writes fail like a full disk or a read-only state file."""

    def __init__(self, initial: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        from contentgate.store import MemoryStore

        self._inner = MemoryStore(initial)
        self.error = error or OSError(28, "No space left on device")

    def get(self, key: str, default: Any = None) -> Any:
        return self._inner.get(key, default)

    def set(self, key: str, value: Any) -> None:
        raise self.error

    def remove(self, key: str) -> None:
        raise self.error

    def snapshot(self) -> dict[str, Any]:
        return self._inner.snapshot()


def test_organic_fallback_is_reached_when_the_store_is_unwritable() -> None:
    from contentgate.models import FallbackReason, ResolverState
    from contentgate.store import StoreKeys

    store = _UnwritableStore()
    resolver, states = _resolver(store, _FakeClient(_ok()))
    resolver.on_attribution({"af_status": "Organic"})

    assert resolver.state is ResolverState.FALLBACK
    assert resolver.decision.fallback_reason is FallbackReason.ORGANIC
    assert states[-1] is ResolverState.FALLBACK
    assert store.get(StoreKeys.APP_MODE) is None


def test_query_result_is_shown_even_if_it_cannot_be_saved() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import StoreKeys

    store = _UnwritableStore({StoreKeys.HAS_LAUNCHED: True, StoreKeys.ACCEPTED_NOTIFICATIONS: True})
    resolver, _ = _resolver(store, _FakeClient(_ok()))
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/home"
    assert store.get(StoreKeys.SAVED_URL) is None


def test_permission_outcome_that_cannot_be_saved_still_resolves() -> None:
    from contentgate.models import PermissionOutcome, ResolverState

    resolver, _ = _resolver(_UnwritableStore(), _FakeClient(_disabled()))
    resolver.on_attribution(NON_ORGANIC)
    assert resolver.state is ResolverState.AWAITING_PERMISSION_DECISION

    resolver.supply_permission_outcome(PermissionOutcome.GRANTED)

    assert resolver.state is ResolverState.FALLBACK


def test_override_is_used_when_it_cannot_be_cleared() -> None:
    from contentgate.models import ResolverState
    from contentgate.store import StoreKeys

    client = _FakeClient(_ok())
    store = _UnwritableStore({StoreKeys.TEMP_URL: "https://content.example/promo"})
    resolver, _ = _resolver(store, client)
    resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/promo"
    assert client.payloads == []


def test_unexpected_store_error_falls_back_without_persisting() -> None:
    from contentgate.models import FallbackReason, ResolverState

    store = _UnwritableStore(error=RuntimeError("store corrupted"))
    resolver, _ = _resolver(store, _FakeClient(_ok()))
    resolver.on_attribution({"af_status": "Organic"})

    assert resolver.state is ResolverState.FALLBACK
    assert resolver.decision.fallback_reason is FallbackReason.FAILURE


def test_config_request_timeout_reuses_stored_address() -> None:
    import socket

    from contentgate.config import GateConfig
    from contentgate.models import ResolverState
    from contentgate.remote_config import RemoteConfigClient
    from contentgate.store import MemoryStore, StoreKeys

    store = MemoryStore(
        {
            StoreKeys.HAS_LAUNCHED: True,
            StoreKeys.APP_MODE: "WebView",
            StoreKeys.SAVED_URL: "https://content.example/saved",
            StoreKeys.SAVED_EXPIRES: NOW + 3600,
            StoreKeys.ACCEPTED_NOTIFICATIONS: True,
        }
    )
    # Accepts connections through the backlog but never answers.
    with socket.socket() as silent:
        silent.bind(("127.0.0.1", 0))
        silent.listen(1)
        port = silent.getsockname()[1]
        client = RemoteConfigClient(GateConfig(endpoint=f"http://127.0.0.1:{port}/config.php", http_timeout=0.5))
        resolver, _ = _resolver(store, client)
        resolver.on_attribution(NON_ORGANIC)

    assert resolver.state is ResolverState.WEBVIEW
    assert resolver.current_url == "https://content.example/saved"
