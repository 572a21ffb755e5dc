"""
DegradationController: the data source everything above it talks to.

Delegates to the live source until initial contact has failed
``threshold`` times in a row (or the live source cannot even be built),
then swaps in the synthetic source for the rest of the session. The swap
is one-way; listeners get a ModeChange so the consumer can show an
advisory.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from pixelsync.core.utils import backoff_delay, safe_call
from pixelsync.degradation.failure_streak import FailureStreak, FailureStreakConfig
from pixelsync.errors import ConfigurationError, PixelSyncError, UserRejectedError
from pixelsync.models import Grid, ModeChange, SourceMode, WriteOutcome
from pixelsync.remote.source import CellHandler, EventChannel, FeeHandler, GridSource
from pixelsync.remote.synthetic_source import SyntheticGridSource

if TYPE_CHECKING:
    from pixelsync.monitoring.metrics import SyncMetrics

log = logging.getLogger("pixelsync")

ModeListener = Callable[[ModeChange], Any]


@dataclass
class DegradationConfig:
    """Configuration for DegradationController."""
    threshold: int = 3
    backoff_base: float = 2.0
    log_event_callback: Optional[Callable[..., None]] = None


class DegradationController:
    """
    Usage:
        controller = DegradationController(build_live_source)
        controller.add_mode_listener(lambda change: print(change.reason))
        grid = await controller.start()
        colors = await controller.get_region(0, 0, 10, 10)
    """

    def __init__(
        self,
        live_factory: Callable[[], GridSource],
        synthetic_factory: Callable[[], GridSource] = SyntheticGridSource,
        config: Optional[DegradationConfig] = None,
        metrics: Optional["SyncMetrics"] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._live_factory = live_factory
        self._synthetic_factory = synthetic_factory
        self.config = config or DegradationConfig()
        self._metrics = metrics
        self._sleep = sleep
        self._log_event = self.config.log_event_callback or self._default_log
        self._streak = FailureStreak(FailureStreakConfig(threshold=self.config.threshold),
                                     log_event=self._log_event)

        self._live: Optional[GridSource] = None
        self._active: Optional[GridSource] = None
        self._mode = SourceMode.LIVE
        self._reason: Optional[str] = None
        self._grid: Optional[Grid] = None
        self._push_available = True
        self._listeners: List[ModeListener] = []
        self.attempts = 0

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # ------------------------------------------------------------------
    # Mode
    # ------------------------------------------------------------------

    @property
    def mode(self) -> SourceMode:
        return self._mode

    @property
    def is_degraded(self) -> bool:
        return self._mode is SourceMode.DEGRADED

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def grid(self) -> Optional[Grid]:
        return self._grid

    @property
    def active_source(self) -> Optional[GridSource]:
        return self._active

    @property
    def push_available(self) -> bool:
        return self._push_available

    @property
    def failure_streak(self) -> FailureStreak:
        return self._streak

    def add_mode_listener(self, listener: ModeListener) -> None:
        self._listeners.append(listener)

    def remove_mode_listener(self, listener: ModeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def report_subscription_abandoned(self, reason: str = "") -> None:
        """Push updates are gone for good; the cache refresh keeps absorbing changes."""
        if not self._push_available:
            return
        self._push_available = False
        self._log_event("push_updates_unavailable", level=logging.WARNING,
                        mode=self._mode.name, reason=reason)

    # ------------------------------------------------------------------
    # Start-up
    # ------------------------------------------------------------------

    async def start(self) -> Grid:
        """Make initial contact and return the grid of whichever source won."""
        if self._grid is not None:
            return self._grid

        try:
            live = self._live_factory()
        except ConfigurationError as exc:
            self._log_event("live_source_misconfigured", level=logging.ERROR, err=str(exc))
            self._streak.force_trip(f"configuration error: {exc}")
            return await self._degrade(f"configuration error: {exc}")

        self._live = live
        while True:
            self.attempts += 1
            try:
                grid = await live.get_dimensions()
            except UserRejectedError:
                # not a connectivity signal
                raise
            except ConfigurationError as exc:
                self._streak.force_trip(f"configuration error: {exc}")
                return await self._degrade(f"configuration error: {exc}")
            except Exception as exc:
                if self._streak.record_failure("get_dimensions", exc):
                    return await self._degrade(self._streak.trip_reason or str(exc))
                delay = backoff_delay(self.config.backoff_base, self.attempts)
                self._log_event("live_contact_retry", level=logging.WARNING,
                                attempt=self.attempts, delay=delay)
                await self._sleep(delay)
                continue

            self._streak.record_success()
            self._active = live
            self._grid = grid
            self._log_event("live_source_ready", width=grid.width, height=grid.height,
                            attempts=self.attempts)
            if self._metrics is not None:
                self._metrics.degraded.set(0)
            return grid

    async def _degrade(self, reason: str) -> Grid:
        if self._live is not None:
            try:
                await self._live.close()
            except Exception as exc:
                self._log_event("live_source_close_error", level=logging.WARNING, err=str(exc))
            self._live = None

        synthetic = self._synthetic_factory()
        self._active = synthetic
        self._mode = SourceMode.DEGRADED
        self._reason = reason
        self._grid = await synthetic.get_dimensions()
        self._log_event("degraded_mode", level=logging.ERROR, reason=reason,
                        width=self._grid.width, height=self._grid.height)
        if self._metrics is not None:
            self._metrics.degraded.set(1)

        change = ModeChange(mode=SourceMode.DEGRADED, reason=reason)
        for listener in list(self._listeners):
            safe_call(listener, change, on_error=self._listener_error)
        return self._grid

    def _listener_error(self, exc: Exception) -> None:
        self._log_event("mode_listener_error", level=logging.ERROR, err=str(exc))

    # ------------------------------------------------------------------
    # GridSource delegation
    # ------------------------------------------------------------------

    def _require_active(self) -> GridSource:
        if self._active is None:
            raise PixelSyncError("data source not started")
        return self._active

    async def get_dimensions(self) -> Grid:
        if self._grid is None:
            return await self.start()
        return self._grid

    async def get_cell(self, x: int, y: int) -> Optional[int]:
        return await self._require_active().get_cell(x, y)

    async def get_region(self, x: int, y: int, width: int, height: int) -> Optional[List[List[int]]]:
        return await self._require_active().get_region(x, y, width, height)

    async def get_fee(self) -> Optional[int]:
        return await self._require_active().get_fee()

    async def set_cell(self, x: int, y: int, color: int, fee_wei: int) -> WriteOutcome:
        return await self._require_active().set_cell(x, y, color, fee_wei)

    async def open_event_channel(self, on_cell: CellHandler, on_fee: FeeHandler) -> EventChannel:
        return await self._require_active().open_event_channel(on_cell, on_fee)

    async def close(self) -> None:
        if self._active is not None:
            await self._active.close()
