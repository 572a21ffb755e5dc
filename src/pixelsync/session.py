"""
GridSession: one fully wired sync engine.

Owns the scheduler, transport, degradation controller, cache, subscription
manager, fee tracker and activity feed, and exposes the consumer-facing
operations on top of them.

Usage:
    session = GridSession(Settings.load())
    grid = await session.start()
    session.ensure_viewport_loaded(Viewport(scale=10))
    handle = session.subscribe(on_cell_changed=print)
    ...
    await session.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from pixelsync.cache.grid_cache import GridCache, GridCacheConfig
from pixelsync.cache.viewport import Viewport
from pixelsync.config.settings import Settings
from pixelsync.degradation.controller import DegradationConfig, DegradationController, ModeListener
from pixelsync.errors import ConfigurationError, PixelSyncError
from pixelsync.events.activity_feed import ActivityEntry, ActivityFeed
from pixelsync.events.subscription_manager import (
    SubscriptionConfig,
    SubscriptionHandle,
    SubscriptionManager,
)
from pixelsync.fees import FeeTracker
from pixelsync.infra.rpc_transport import RpcTransport
from pixelsync.infra.ws_transport import LogStreamChannel
from pixelsync.models import (
    Cell,
    CellChangedEvent,
    FeeChangedEvent,
    FeeSnapshot,
    Grid,
    SourceMode,
    WriteOutcome,
    WriteStatus,
)
from pixelsync.monitoring.metrics import SyncMetrics
from pixelsync.remote.rpc_source import RpcGridSource, RpcSourceConfig
from pixelsync.remote.source import GridSource
from pixelsync.remote.synthetic_source import SyntheticGridSource
from pixelsync.scheduler.request_scheduler import DEFAULT_KNOWN_BAD, RequestScheduler, SchedulerConfig

log = logging.getLogger("pixelsync")


class GridSession:
    def __init__(
        self,
        cfg: Settings,
        metrics: Optional[SyncMetrics] = None,
        transport: Any = None,
        channel_factory: Callable[..., Any] = LogStreamChannel.open,
        synthetic_factory: Optional[Callable[[], GridSource]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.cfg = cfg
        self.metrics = metrics or SyncMetrics()
        self._transport = transport
        self._owns_transport = False
        self._channel_factory = channel_factory
        self._synthetic_factory = synthetic_factory
        self._sleep = sleep
        self._log_event = log_event or self._default_log

        self.scheduler: Optional[RequestScheduler] = None
        self.controller = DegradationController(
            self._build_live_source,
            self._build_synthetic_source,
            DegradationConfig(
                threshold=cfg.degrade_threshold,
                backoff_base=cfg.degrade_backoff_base,
                log_event_callback=self._log_event,
            ),
            metrics=self.metrics,
            sleep=sleep,
        )
        self.fees = FeeTracker(self.controller, eth_price_usd=cfg.eth_price_usd,
                               log_event_callback=self._log_event)
        self.activity_feed = ActivityFeed()
        self.cache: Optional[GridCache] = None
        self.subscriptions: Optional[SubscriptionManager] = None
        self.grid: Optional[Grid] = None

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _build_live_source(self) -> RpcGridSource:
        cfg = self.cfg
        rpc_url = cfg.resolve_rpc_url()
        contract_address = cfg.resolve_contract_address()
        signer = cfg.resolve_signer()
        try:
            ws_url: Optional[str] = cfg.resolve_ws_url()
        except ConfigurationError:
            ws_url = None

        if self._transport is None:
            self._transport = RpcTransport(rpc_url, timeout=cfg.call_timeout)
            self._owns_transport = True

        known_bad = dict(DEFAULT_KNOWN_BAD)
        known_bad.update(cfg.known_bad_selectors)
        self.scheduler = RequestScheduler(
            self._transport,
            SchedulerConfig(
                max_concurrency=cfg.max_concurrency,
                inter_call_delay=cfg.inter_call_delay,
                call_timeout=cfg.call_timeout,
                overload_cooldown=cfg.overload_cooldown,
                overload_delay_step=cfg.overload_delay_step,
                known_bad=known_bad,
                log_event_callback=self._log_event,
            ),
            metrics=self.metrics,
            sleep=self._sleep,
        )
        return RpcGridSource(
            self.scheduler,
            RpcSourceConfig(
                contract_address=contract_address,
                ws_url=ws_url,
                chain_id=cfg.chain_id,
                account=cfg.account_address,
                confirmation_timeout=cfg.confirmation_timeout,
                receipt_poll_interval=cfg.receipt_poll_interval,
                log_event_callback=self._log_event,
            ),
            signer=signer,
            channel_factory=self._channel_factory,
            sleep=self._sleep,
        )

    def _build_synthetic_source(self) -> GridSource:
        if self._synthetic_factory is not None:
            return self._synthetic_factory()
        return SyntheticGridSource(sleep=self._sleep, log_event_callback=self._log_event)

    async def start(self, refresh: bool = True) -> Grid:
        """Discover the grid (or degrade) and build the cache on top of it."""
        if self.grid is not None:
            return self.grid
        cfg = self.cfg
        grid = await self.controller.start()
        self.grid = grid
        self.cache = GridCache(
            self.controller,
            grid,
            GridCacheConfig(
                chunk_size=cfg.chunk_size,
                max_region_size=cfg.max_region_size,
                placeholder_color=cfg.placeholder_color,
                surface_width=cfg.surface_width,
                surface_height=cfg.surface_height,
                refresh_interval=cfg.refresh_interval,
                max_chunks=cfg.cache_max_chunks,
                log_event_callback=self._log_event,
            ),
            metrics=self.metrics,
        )
        self.subscriptions = SubscriptionManager(
            self.controller,
            self.cache,
            SubscriptionConfig(
                base_delay=cfg.reconnect_base_delay,
                max_attempts=cfg.reconnect_max_attempts,
                log_event_callback=self._log_event,
            ),
            activity=self.activity_feed,
            metrics=self.metrics,
            on_abandoned=self.controller.report_subscription_abandoned,
            sleep=self._sleep,
        )
        await self.fees.refresh()
        if refresh:
            self.cache.start_refresh(cfg.refresh_interval)
        self._log_event("session_started", width=grid.width, height=grid.height,
                        mode=self.controller.mode.name)
        return grid

    def _require_started(self) -> GridCache:
        if self.cache is None:
            raise PixelSyncError("session not started")
        return self.cache

    # ------------------------------------------------------------------
    # Consumer operations
    # ------------------------------------------------------------------

    def ensure_viewport_loaded(self, viewport: Optional[Viewport] = None) -> None:
        viewport = viewport or Viewport()
        viewport = viewport.with_scale(viewport.scale, self.cfg.min_scale, self.cfg.max_scale)
        self._require_started().ensure_viewport_loaded(viewport)

    def get_cell(self, x: int, y: int) -> Optional[Cell]:
        return self._require_started().get_cell(x, y)

    async def inspect_cell(self, x: int, y: int) -> Optional[Cell]:
        """Read one cell from the source; falls back to the cached cell."""
        cache = self._require_started()
        if not cache.grid.contains(x, y):
            return None
        try:
            color = await self.controller.get_cell(x, y)
        except PixelSyncError as exc:
            self._log_event("inspect_failed", level=logging.WARNING, x=x, y=y, err=str(exc))
            color = None
        cached = cache.get_cell(x, y)
        if color is None:
            return cached
        if cached is not None and cached.color == color:
            return cached
        return Cell(x=x, y=y, color=color)

    def subscribe(
        self,
        on_cell_changed: Optional[Callable[[CellChangedEvent], Any]] = None,
        on_fee_changed: Optional[Callable[[FeeChangedEvent], Any]] = None,
    ) -> SubscriptionHandle:
        self._require_started()

        def _on_fee(event: FeeChangedEvent) -> None:
            self.fees.apply(event)
            if on_fee_changed is not None:
                on_fee_changed(event)

        return self.subscriptions.subscribe(on_cell_changed, _on_fee)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        await handle.unsubscribe()

    @property
    def mode(self) -> SourceMode:
        return self.controller.mode

    @property
    def is_degraded(self) -> bool:
        return self.controller.is_degraded

    def add_mode_listener(self, listener: ModeListener) -> None:
        self.controller.add_mode_listener(listener)

    @property
    def fee(self) -> FeeSnapshot:
        return self.fees.snapshot

    async def paint(self, x: int, y: int, color: int) -> WriteOutcome:
        cache = self._require_started()
        if not cache.grid.contains(x, y):
            outcome = WriteOutcome(WriteStatus.FAILED, error="out_of_bounds")
        else:
            fee = await self.fees.refresh()
            outcome = await self.controller.set_cell(x, y, color, fee.wei)
            if outcome.status is WriteStatus.CONFIRMED:
                cache.apply_remote_update(x, y, color)
        self.metrics.writes.labels(status=outcome.status.name).inc()
        self._log_event("paint_result", x=x, y=y, status=outcome.status.name,
                        reference=outcome.reference, error=outcome.error)
        return outcome

    def activity(self) -> List[ActivityEntry]:
        return self.activity_feed.entries()

    def status(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "mode": self.controller.mode.name,
            "degraded_reason": self.controller.reason,
            "push_available": self.controller.push_available,
            "fee_eth": self.fees.snapshot.eth,
            "activity": len(self.activity_feed),
        }
        if self.cache is not None:
            data["cache"] = self.cache.snapshot()
        if self.scheduler is not None:
            data["scheduler"] = self.scheduler.stats()
        if self.subscriptions is not None:
            data["subscriptions"] = [h.state.value for h in self.subscriptions.handles]
        return data

    async def close(self) -> None:
        if self.subscriptions is not None:
            await self.subscriptions.close()
        if self.cache is not None:
            await self.cache.close()
        await self.controller.close()
        if self.scheduler is not None:
            await self.scheduler.close()
        if self._owns_transport and self._transport is not None:
            await self._transport.close()
        self._log_event("session_closed")
