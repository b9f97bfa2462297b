from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .config import DEFAULT_REDIRECT_LIMIT
from .redaction import redact_url

_LOGGER = logging.getLogger("contentgate.redirect_guard")


class RedirectVerdict(str, Enum):
    CONTINUE = "continue"
    # Limit exceeded: stop loading and reload `last_good_url`.
    RECOVER = "recover"
    # Limit exceeded with nothing to recover to: stop only.
    HALT = "halt"


@dataclass
class RedirectState:
    count: int = 0
    limit: int = DEFAULT_REDIRECT_LIMIT
    last_good_url: str | None = None


class RedirectGuard:
    """Per-surface redirect circuit breaker.

    The counter spans the whole lifetime of the surface and is never reset, so once
    the limit is crossed every further redirect overflows again. Each overflow
    reloads the last good address when one is known.
    """

    def __init__(self, limit: int = DEFAULT_REDIRECT_LIMIT) -> None:
        self.state = RedirectState(limit=max(0, int(limit)))

    @property
    def count(self) -> int:
        return self.state.count

    @property
    def last_good_url(self) -> str | None:
        return self.state.last_good_url

    @property
    def tripped(self) -> bool:
        return self.state.count > self.state.limit

    def remember_good(self, url: str | None) -> None:
        if url:
            self.state.last_good_url = url

    def record_redirect(self) -> RedirectVerdict:
        self.state.count += 1
        if self.state.count <= self.state.limit:
            return RedirectVerdict.CONTINUE

        if self.state.last_good_url:
            _LOGGER.warning(
                "redirect_limit_exceeded count=%d action=recover url=%s",
                self.state.count,
                redact_url(self.state.last_good_url),
            )
            return RedirectVerdict.RECOVER
        _LOGGER.warning("redirect_limit_exceeded count=%d action=halt", self.state.count)
        return RedirectVerdict.HALT


__all__ = ["RedirectGuard", "RedirectState", "RedirectVerdict"]
