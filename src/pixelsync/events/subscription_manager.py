"""
SubscriptionManager: keeps a push channel open and feeds it into the cache.

Each subscription is supervised by one task running the state machine

    CONNECTING -> CONNECTED
    CONNECTED -> RECONNECTING(1)              channel dropped
    CONNECTING -> RECONNECTING(1)             first connect failed
    RECONNECTING(n) -> CONNECTED              after waiting base * 2**(n-1)
    RECONNECTING(n) -> RECONNECTING(n+1)      connect failed, n < max
    RECONNECTING(max) -> ABANDONED            connect failed, owner notified
    any -> UNSUBSCRIBED                       unsubscribe()

ABANDONED and UNSUBSCRIBED are terminal: no timers or tasks remain.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from pixelsync.core.utils import backoff_delay, safe_call
from pixelsync.errors import ConfigurationError
from pixelsync.models import CellChangedEvent, FeeChangedEvent
from pixelsync.remote.source import EventChannel, GridSource

if TYPE_CHECKING:
    from pixelsync.cache.grid_cache import GridCache
    from pixelsync.events.activity_feed import ActivityFeed
    from pixelsync.monitoring.metrics import SyncMetrics

log = logging.getLogger("pixelsync")


class SubscriptionState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ABANDONED = "abandoned"
    UNSUBSCRIBED = "unsubscribed"


_STATE_GAUGE = {
    SubscriptionState.CONNECTING: 0,
    SubscriptionState.CONNECTED: 1,
    SubscriptionState.RECONNECTING: 2,
    SubscriptionState.ABANDONED: 3,
    SubscriptionState.UNSUBSCRIBED: 4,
}


@dataclass
class SubscriptionConfig:
    """Configuration for SubscriptionManager."""
    base_delay: float = 2.0
    max_attempts: int = 5
    log_event_callback: Optional[Callable[..., None]] = None


class SubscriptionHandle:
    """
    Consumer token for one subscription. Survives reconnects; owns at most
    one channel at a time.
    """

    def __init__(
        self,
        manager: "SubscriptionManager",
        on_cell_changed: Optional[Callable[[CellChangedEvent], Any]],
        on_fee_changed: Optional[Callable[[FeeChangedEvent], Any]],
    ) -> None:
        self._manager = manager
        self._on_cell_changed = on_cell_changed
        self._on_fee_changed = on_fee_changed
        self._state = SubscriptionState.CONNECTING
        self._attempt = 0
        self._channel: Optional[EventChannel] = None
        self._task: Optional[asyncio.Task] = None
        self.delays: List[float] = []

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def attempt(self) -> int:
        """Current reconnect attempt (0 unless RECONNECTING)."""
        return self._attempt

    @property
    def is_terminal(self) -> bool:
        return self._state in (SubscriptionState.ABANDONED, SubscriptionState.UNSUBSCRIBED)

    @property
    def has_pending_timer(self) -> bool:
        return self._task is not None and not self._task.done()

    def _start(self) -> None:
        self._task = asyncio.create_task(self._supervise())

    async def unsubscribe(self) -> None:
        """Stop from any state. Cancels a pending reconnect wait and closes the channel."""
        if self._state is SubscriptionState.UNSUBSCRIBED:
            return
        self._set_state(SubscriptionState.UNSUBSCRIBED, 0)
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        await self._close_channel()
        self._manager._forget(self)

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await channel.close()
        except Exception as exc:
            self._manager._log_event("subscription_close_error", level=logging.WARNING, err=str(exc))

    def _set_state(self, state: SubscriptionState, attempt: int) -> None:
        previous = self._state
        self._state = state
        self._attempt = attempt
        mgr = self._manager
        if mgr._metrics is not None:
            mgr._metrics.subscription_state.set(_STATE_GAUGE[state])
        if previous is not state or state is SubscriptionState.RECONNECTING:
            mgr._log_event("subscription_state", state=state.value, attempt=attempt)
        safe_call(mgr._on_state_change, self, on_error=mgr._callback_error)

    async def _supervise(self) -> None:
        mgr = self._manager
        attempt = 0
        while True:
            if attempt == 0:
                self._set_state(SubscriptionState.CONNECTING, 0)
            else:
                delay = backoff_delay(mgr.config.base_delay, attempt)
                self.delays.append(delay)
                self._set_state(SubscriptionState.RECONNECTING, attempt)
                await mgr._sleep(delay)

            try:
                channel = await mgr.source.open_event_channel(self._handle_cell, self._handle_fee)
            except ConfigurationError as exc:
                mgr._log_event("subscription_unavailable", level=logging.ERROR, err=str(exc))
                self._abandon(str(exc))
                return
            except Exception as exc:
                if attempt >= mgr.config.max_attempts:
                    mgr._log_event("subscription_reconnect_failed", level=logging.WARNING,
                                   key="final", attempt=attempt, err=str(exc))
                    self._abandon(str(exc))
                    return
                mgr._log_event("subscription_reconnect_failed", level=logging.WARNING,
                               key=str(attempt), attempt=attempt, err=str(exc))
                attempt += 1
                continue

            self._channel = channel
            if mgr._metrics is not None and attempt > 0:
                mgr._metrics.reconnects.inc()
            self._set_state(SubscriptionState.CONNECTED, 0)
            try:
                await channel.wait_closed()
                mgr._log_event("subscription_dropped", level=logging.WARNING, err="closed by remote")
            except Exception as exc:
                mgr._log_event("subscription_dropped", level=logging.WARNING, err=str(exc))
            await self._close_channel()
            attempt = 1

    def _abandon(self, reason: str) -> None:
        mgr = self._manager
        self._set_state(SubscriptionState.ABANDONED, 0)
        mgr._log_event("subscription_abandoned", level=logging.ERROR, reason=reason,
                       delays=self.delays)
        safe_call(mgr._on_abandoned, reason, on_error=mgr._callback_error)

    def _handle_cell(self, event: CellChangedEvent) -> None:
        if self.is_terminal:
            return
        mgr = self._manager
        # cache first so the callback observes the new color
        mgr.cache.apply_remote_update(event.x, event.y, event.color, event.timestamp)
        if mgr.activity is not None:
            mgr.activity.record(event)
        if mgr._metrics is not None:
            mgr._metrics.events_received.labels(kind="cell").inc()
        safe_call(self._on_cell_changed, event, on_error=mgr._callback_error)

    def _handle_fee(self, event: FeeChangedEvent) -> None:
        if self.is_terminal:
            return
        mgr = self._manager
        if mgr._metrics is not None:
            mgr._metrics.events_received.labels(kind="fee").inc()
        safe_call(self._on_fee_changed, event, on_error=mgr._callback_error)


class SubscriptionManager:
    """
    Usage:
        manager = SubscriptionManager(source, cache, SubscriptionConfig())
        handle = manager.subscribe(on_cell_changed=print)
        ...
        await handle.unsubscribe()
    """

    def __init__(
        self,
        source: GridSource,
        cache: "GridCache",
        config: Optional[SubscriptionConfig] = None,
        activity: Optional["ActivityFeed"] = None,
        metrics: Optional["SyncMetrics"] = None,
        on_abandoned: Optional[Callable[[str], Any]] = None,
        on_state_change: Optional[Callable[[SubscriptionHandle], Any]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.cache = cache
        self.config = config or SubscriptionConfig()
        self.activity = activity
        self._metrics = metrics
        self._on_abandoned = on_abandoned
        self._on_state_change = on_state_change
        self._sleep = sleep
        self._log_event = self.config.log_event_callback or self._default_log
        self._handles: List[SubscriptionHandle] = []

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    def _callback_error(self, exc: Exception) -> None:
        self._log_event("subscriber_callback_error", level=logging.ERROR, err=str(exc))

    @property
    def handles(self) -> List[SubscriptionHandle]:
        return list(self._handles)

    def subscribe(
        self,
        on_cell_changed: Optional[Callable[[CellChangedEvent], Any]] = None,
        on_fee_changed: Optional[Callable[[FeeChangedEvent], Any]] = None,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(self, on_cell_changed, on_fee_changed)
        self._handles.append(handle)
        handle._start()
        return handle

    def _forget(self, handle: SubscriptionHandle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)

    async def close(self) -> None:
        for handle in list(self._handles):
            await handle.unsubscribe()
