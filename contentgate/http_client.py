from __future__ import annotations

import json
import ssl
import urllib.parse
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import HTTPSHandler, Request, build_opener

from .config import GateConfig


class HttpClientError(Exception):
    pass


def _build_request(url: str, body: bytes) -> Request:
    return Request(
        url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", "User-Agent": "contentgate/1.0"},
    )


def http_post_json(url: str, payload: dict[str, Any], config: GateConfig) -> dict[str, object]:
    """POST a JSON document and return status/body. Any non-200 status is an error."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    try:
        body = json.dumps(payload).encode()
    except (TypeError, ValueError) as exc:
        raise HttpClientError(f"Payload is not JSON-serializable: {exc}") from exc

    req = _build_request(url, body)
    try:
        ctx = ssl.create_default_context()
        opener = build_opener(HTTPSHandler(context=ctx))
        with opener.open(req, timeout=config.http_timeout) as resp:
            raw = resp.read(config.http_max_bytes + 1)
            if len(raw) > config.http_max_bytes:
                raise HttpClientError(f"Response exceeds {config.http_max_bytes} bytes")
            if resp.status != 200:
                raise HttpClientError(f"Unexpected status {resp.status}")
            return {
                "status": resp.status,
                "headers": dict(resp.headers),
                "body": raw.decode(errors="replace"),
            }
    except HTTPError as exc:
        raise HttpClientError(f"Unexpected status {exc.code}") from exc
    except (TimeoutError, URLError, OSError) as exc:
        raise HttpClientError(str(exc)) from exc
