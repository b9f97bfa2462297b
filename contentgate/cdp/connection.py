"""Chrome DevTools Protocol transport (websocket-client)."""

from __future__ import annotations

import json
import socket
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any
from urllib.error import URLError
from urllib.request import urlopen

import websocket

from ..http_client import HttpClientError


def http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from a DevTools HTTP endpoint (/json/version, /json/list)."""
    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, OSError, ValueError) as e:
        raise HttpClientError(str(e)) from e


class CdpConnection:
    """Low-level CDP WebSocket connection.

    Commands may be issued from more than one thread (event pump, cookie snapshots);
    a lock serialises each send/receive exchange. Events that arrive while waiting for
    a response are queued, never dropped.
    """

    def __init__(self, ws_url: str, timeout: float = 5.0):
        self.ws = websocket.create_connection(ws_url, timeout=timeout)
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        self._lock = threading.RLock()
        self._event_queue: list[dict[str, Any]] = []
        self._max_event_queue = 2000
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _push_event(self, event: dict[str, Any]) -> None:
        """Store an event for later consumption (bounded)."""
        if not isinstance(event.get("method"), str):
            return
        self._event_queue.append(event)
        if len(self._event_queue) > self._max_event_queue:
            # Drop oldest events to avoid unbounded growth in long sessions.
            del self._event_queue[: len(self._event_queue) - self._max_event_queue]

    def take_events(self) -> list[dict[str, Any]]:
        """Return and clear every queued event, oldest first."""
        with self._lock:
            events, self._event_queue = self._event_queue, []
        return events

    def drain_events(self, *, max_messages: int = 50, wait: float = 0.0) -> int:
        """Read already-arrived events off the socket without blocking (or up to `wait` seconds).

        Stops at the first non-event message so command responses are never consumed here.
        """
        drained = 0
        with self._lock:
            if self._closed:
                return 0
            for i in range(max(0, int(max_messages))):
                try:
                    self.ws.settimeout(wait if i == 0 and wait > 0 else 0.0)
                    raw = self.ws.recv()
                except websocket.WebSocketConnectionClosedException:
                    self._closed = True
                    break
                except Exception:  # noqa: BLE001
                    # Timeout / would block: nothing more buffered.
                    break

                try:
                    data = json.loads(raw)
                except ValueError:
                    continue

                if isinstance(data, dict) and isinstance(data.get("method"), str) and "id" not in data:
                    self._push_event(data)
                    drained += 1
                    continue
                break
        return drained

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a CDP command and wait for its response."""
        with self._lock:
            if self._closed:
                raise HttpClientError("CDP connection is closed")
            msg_id = self._next_id
            self._next_id += 1

            msg: dict[str, Any] = {"id": msg_id, "method": method}
            if params:
                msg["params"] = params
            try:
                self.ws.settimeout(min(2.0, max(0.5, float(self.timeout))))
                self.ws.send(json.dumps(msg))
            except Exception as exc:  # noqa: BLE001
                raise HttpClientError(str(exc)) from exc
            return self._recv_until(msg_id)

    def _recv_until(self, expected_id: int) -> dict[str, Any]:
        deadline = time.time() + self.timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise HttpClientError("CDP response timed out")
            try:
                self.ws.settimeout(min(0.5, remaining))
                raw = self.ws.recv()
            except websocket.WebSocketTimeoutException:
                continue
            except Exception as exc:  # noqa: BLE001
                msg = str(exc).lower()
                if isinstance(exc, TimeoutError) or "timed out" in msg:
                    continue
                raise HttpClientError(str(exc)) from exc

            try:
                data = json.loads(raw)
            except ValueError:
                continue

            if isinstance(data, dict) and isinstance(data.get("method"), str) and "id" not in data:
                self._push_event(data)
                continue

            if isinstance(data, dict) and data.get("id") == expected_id:
                if "error" in data:
                    raise HttpClientError(str(data["error"]))
                result = data.get("result")
                return result if isinstance(result, dict) else {}

    def close(self) -> None:
        """Hard-close the socket; a graceful websocket close can hang on a wedged tab."""
        self._closed = True
        sock = getattr(self.ws, "sock", None)
        if sock is not None:
            with suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(OSError):
                sock.close()


ConnectionFactory = Callable[[str], CdpConnection]


__all__ = ["CdpConnection", "ConnectionFactory", "http_get_json"]
