"""Install-attribution intake.

The attribution SDK reports exactly one terminal outcome per install. The gate
keeps the first one and ignores the rest; it never retries (the SDK owns that).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .models import AttributionSnapshot

_LOGGER = logging.getLogger("contentgate.attribution")


@dataclass(frozen=True)
class AttributionOutcome:
    snapshot: AttributionSnapshot | None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.snapshot is not None


class AttributionGate:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcome: AttributionOutcome | None = None

    @property
    def outcome(self) -> AttributionOutcome | None:
        return self._outcome

    @property
    def snapshot(self) -> AttributionSnapshot | None:
        outcome = self._outcome
        return outcome.snapshot if outcome is not None else None

    @property
    def is_organic(self) -> bool | None:
        """`None` until a successful outcome classifies the install."""
        snap = self.snapshot
        return snap.is_organic if snap is not None else None

    def receive_success(self, fields: Mapping[str, Any]) -> bool:
        snapshot = AttributionSnapshot.from_raw(fields)
        return self._accept(AttributionOutcome(snapshot=snapshot))

    def receive_failure(self, error: object = None) -> bool:
        return self._accept(AttributionOutcome(snapshot=None, error=str(error) if error is not None else "unavailable"))

    def implies_organic_fallback(self, *, first_launch: bool) -> bool:
        return first_launch and self.is_organic is True

    def _accept(self, outcome: AttributionOutcome) -> bool:
        with self._lock:
            if self._outcome is not None:
                _LOGGER.info("attribution_ignored reason=already_resolved")
                return False
            self._outcome = outcome
        if outcome.succeeded:
            _LOGGER.info("attribution_received organic=%s", outcome.snapshot.is_organic)  # type: ignore[union-attr]
        else:
            _LOGGER.info("attribution_failed error=%s", outcome.error)
        return True


__all__ = ["AttributionGate", "AttributionOutcome"]
