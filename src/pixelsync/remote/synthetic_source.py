"""
Synthetic grid source used once the live endpoint is given up on.

Deterministic checkerboard content, a fixed fee, and local writes that are
confirmed immediately and echoed to open event channels after a short
delay, so the rest of the engine behaves exactly as it does when live.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pixelsync.errors import RemoteExecutionError
from pixelsync.models import (
    CellChangedEvent,
    FeeChangedEvent,
    Grid,
    WriteOutcome,
    WriteStatus,
)
from pixelsync.remote.source import CellHandler, FeeHandler

log = logging.getLogger("pixelsync")

CHECKERBOARD = (0xEEEEEE, 0xDDDDDD, 0xCCCCCC, 0xBBBBBB)
DEFAULT_FEE_WEI = 10 ** 15  # 0.001 ETH
SYNTHETIC_ACTOR = "0x0000000000000000000000000000000000000000"


def checkerboard_color(x: int, y: int) -> int:
    return CHECKERBOARD[(x + y) % len(CHECKERBOARD)]


class SyntheticChannel:
    def __init__(self, source: "SyntheticGridSource", on_cell: CellHandler, on_fee: FeeHandler) -> None:
        self._source = source
        self.on_cell = on_cell
        self.on_fee = on_fee
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        self._source._channels.discard(self)
        self._closed.set()


class SyntheticGridSource:
    """In-memory stand-in for the contract. Never fails a read."""

    def __init__(
        self,
        width: int = 100,
        height: int = 100,
        fee_wei: int = DEFAULT_FEE_WEI,
        event_delay: float = 1.0,
        actor: str = SYNTHETIC_ACTOR,
        sleep: Callable[[float], Any] = asyncio.sleep,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self.grid = Grid(width=width, height=height)
        self.fee_wei = fee_wei
        self.event_delay = event_delay
        self.actor = actor
        self._sleep = sleep
        self._log_event = log_event_callback or self._default_log
        self._writes: Dict[Tuple[int, int], int] = {}
        self._channels: Set[SyntheticChannel] = set()
        self._pending: Set[asyncio.Task] = set()

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    def color_at(self, x: int, y: int) -> int:
        return self._writes.get((x, y), checkerboard_color(x, y))

    def _check_rect(self, x: int, y: int, width: int, height: int) -> None:
        if width <= 0 or height <= 0 or not (
            self.grid.contains(x, y) and self.grid.contains(x + width - 1, y + height - 1)
        ):
            raise RemoteExecutionError(f"region ({x},{y}) {width}x{height} outside grid")

    async def get_dimensions(self) -> Grid:
        return self.grid

    async def get_cell(self, x: int, y: int) -> Optional[int]:
        self._check_rect(x, y, 1, 1)
        return self.color_at(x, y)

    async def get_region(self, x: int, y: int, width: int, height: int) -> Optional[List[List[int]]]:
        self._check_rect(x, y, width, height)
        return [[self.color_at(x + dx, y + dy) for dx in range(width)] for dy in range(height)]

    async def get_fee(self) -> Optional[int]:
        return self.fee_wei

    async def set_cell(self, x: int, y: int, color: int, fee_wei: int) -> WriteOutcome:
        if not self.grid.contains(x, y):
            return WriteOutcome(WriteStatus.FAILED, error="out_of_bounds")
        self._writes[(x, y)] = color
        reference = "0x" + secrets.token_hex(32)
        self._log_event("synthetic_write", x=x, y=y, color=color, reference=reference)
        task = asyncio.create_task(self._emit_later(CellChangedEvent(x=x, y=y, color=color, actor=self.actor)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return WriteOutcome(WriteStatus.CONFIRMED, reference=reference)

    def set_fee(self, fee_wei: int) -> None:
        self.fee_wei = fee_wei
        event = FeeChangedEvent(new_fee_wei=fee_wei)
        for channel in list(self._channels):
            channel.on_fee(event)

    async def _emit_later(self, event: CellChangedEvent) -> None:
        if self.event_delay > 0:
            await self._sleep(self.event_delay)
        for channel in list(self._channels):
            try:
                channel.on_cell(event)
            except Exception as exc:
                self._log_event("synthetic_emit_error", level=logging.ERROR, err=str(exc))

    async def open_event_channel(self, on_cell: CellHandler, on_fee: FeeHandler) -> SyntheticChannel:
        channel = SyntheticChannel(self, on_cell, on_fee)
        self._channels.add(channel)
        return channel

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*self._pending, return_exceptions=True)
        for channel in list(self._channels):
            await channel.close()
