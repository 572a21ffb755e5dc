"""
FailureStreak: consecutive-failure counter that latches once tripped.

Tracks initial-contact failures against the live source. Unlike a circuit
breaker it never resets after tripping: degradation is one-way for the
life of the session.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

log = logging.getLogger("pixelsync")


@dataclass
class FailureStreakConfig:
    threshold: int = 3  # consecutive failures to trip


class FailureStreak:
    def __init__(self, config: FailureStreakConfig,
                 on_trip: Optional[Callable[[str], None]] = None,
                 log_event: Optional[Callable[..., None]] = None) -> None:
        self.config = config
        self.streak: int = 0
        self.total_failures: int = 0
        self._tripped: bool = False
        self._trip_reason: Optional[str] = None
        self._on_trip = on_trip
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    @property
    def is_tripped(self) -> bool:
        return self._tripped

    @property
    def trip_reason(self) -> Optional[str]:
        return self._trip_reason

    def record_failure(self, where: str, error: BaseException) -> bool:
        """
        Count a failure. Returns True if this failure tripped the streak.
        """
        if self._tripped:
            return False
        self.streak += 1
        self.total_failures += 1
        self._log_event("live_contact_failed", level=logging.WARNING, where=where,
                        err_type=type(error).__name__, err=str(error), streak=self.streak)
        if self.streak >= self.config.threshold:
            return self._trip(f"{where}: {self.streak} consecutive failures ({error})")
        return False

    def record_success(self) -> None:
        if self.streak > 0 and not self._tripped:
            self._log_event("live_contact_recovered", streak=self.streak)
            self.streak = 0

    def force_trip(self, reason: str) -> bool:
        """Trip without counting, e.g. for a configuration error."""
        return self._trip(reason)

    def _trip(self, reason: str) -> bool:
        if self._tripped:
            return False
        self._tripped = True
        self._trip_reason = reason
        self._log_event("live_source_abandoned", level=logging.ERROR, reason=reason, streak=self.streak)
        if self._on_trip is not None:
            self._on_trip(reason)
        return True

    def get_state(self) -> dict:
        return {
            "tripped": self._tripped,
            "streak": self.streak,
            "total_failures": self.total_failures,
            "threshold": self.config.threshold,
            "reason": self._trip_reason,
        }
