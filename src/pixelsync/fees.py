"""
Per-write fee tracking: read once at start, then kept current by FeeUpdated
events. Falls back to the last known (or default) fee when a read is
answered with a placeholder or fails.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from pixelsync.core.colors import eth_to_usd, format_eth
from pixelsync.errors import PixelSyncError
from pixelsync.models import FeeChangedEvent, FeeSnapshot
from pixelsync.remote.source import GridSource

log = logging.getLogger("pixelsync")

DEFAULT_FEE_WEI = 10 ** 15  # 0.001 ETH


class FeeTracker:
    def __init__(
        self,
        source: GridSource,
        eth_price_usd: float = 2500.0,
        default_fee_wei: int = DEFAULT_FEE_WEI,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self.source = source
        self.eth_price_usd = eth_price_usd
        self._log_event = log_event_callback or self._default_log
        self._snapshot = self._build(default_fee_wei)
        self._known = False

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    def _build(self, wei: int) -> FeeSnapshot:
        eth = format_eth(wei)
        return FeeSnapshot(wei=wei, eth=eth, usd=eth_to_usd(eth, self.eth_price_usd))

    @property
    def snapshot(self) -> FeeSnapshot:
        return self._snapshot

    @property
    def is_known(self) -> bool:
        """False while the snapshot is still the default."""
        return self._known

    async def refresh(self) -> FeeSnapshot:
        try:
            wei = await self.source.get_fee()
        except PixelSyncError as exc:
            self._log_event("fee_read_failed", level=logging.WARNING, err=str(exc))
            return self._snapshot
        if wei is None:
            return self._snapshot
        self._set(wei, source="read")
        return self._snapshot

    def apply(self, event: FeeChangedEvent) -> FeeSnapshot:
        self._set(event.new_fee_wei, source="event")
        return self._snapshot

    def _set(self, wei: int, source: str) -> None:
        self._known = True
        if wei == self._snapshot.wei:
            return
        self._snapshot = self._build(wei)
        self._log_event("fee_updated", wei=wei, eth=self._snapshot.eth, source=source)
