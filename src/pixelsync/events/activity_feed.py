"""
Bounded, newest-first log of recent cell changes.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, List

from pixelsync.core.colors import format_hex_color
from pixelsync.models import CellChangedEvent

DEFAULT_CAPACITY = 50


@dataclass(frozen=True)
class ActivityEntry:
    id: str
    x: int
    y: int
    color: int
    actor: str
    timestamp: float

    @property
    def hex_color(self) -> str:
        return format_hex_color(self.color)


class ActivityFeed:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = capacity
        self._entries: Deque[ActivityEntry] = deque(maxlen=capacity)

    def record(self, event: CellChangedEvent) -> ActivityEntry:
        ms = int(event.timestamp * 1000)
        entry = ActivityEntry(
            id=f"{event.x}-{event.y}-{ms}",
            x=event.x,
            y=event.y,
            color=event.color,
            actor=event.actor,
            timestamp=event.timestamp,
        )
        self._entries.appendleft(entry)
        return entry

    def entries(self) -> List[ActivityEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
