from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from contextlib import suppress

_LOGGER = logging.getLogger("contentgate.reachability")

Probe = Callable[[], bool]


def tcp_probe(host: str, port: int, *, timeout: float = 2.0) -> Probe:
    """Build a probe that reports whether a TCP connection to host:port succeeds."""

    def _probe() -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    return _probe


class ReachabilityMonitor:
    """Background connectivity watcher.

    Polls `probe` every `interval_s` and calls the listener only on transitions
    (the first observation counts as one). Listener errors are logged and never stop
    the watcher.
    """

    def __init__(
        self,
        probe: Probe,
        *,
        interval_s: float = 5.0,
        on_change: Callable[[bool], object] | None = None,
    ) -> None:
        self._probe = probe
        self._interval_s = max(0.05, float(interval_s))
        self._on_change = on_change
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._satisfied: bool | None = None

    @property
    def satisfied(self) -> bool | None:
        return self._satisfied

    def set_listener(self, on_change: Callable[[bool], object] | None) -> None:
        self._on_change = on_change

    def start(self) -> bool:
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop.clear()
        t = threading.Thread(target=self._run, name="contentgate-reachability", daemon=True)
        self._thread = t
        t.start()
        return True

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t.is_alive() and t is not threading.current_thread():
            t.join(timeout)

    def check_now(self) -> bool:
        """Probe once and emit if the status changed. Returns the observed status."""
        try:
            status = bool(self._probe())
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("reachability_probe_failed error=%s", exc)
            status = False
        self._observe(status)
        return status

    def _observe(self, status: bool) -> None:
        with self._lock:
            if self._satisfied is status:
                return
            self._satisfied = status
        _LOGGER.info("reachability_changed satisfied=%s", status)
        listener = self._on_change
        if listener is None:
            return
        try:
            listener(status)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("reachability_listener_failed")

    def _run(self) -> None:
        while not self._stop.is_set():
            with suppress(Exception):
                self.check_now()
            self._stop.wait(self._interval_s)


__all__ = ["Probe", "ReachabilityMonitor", "tcp_probe"]
