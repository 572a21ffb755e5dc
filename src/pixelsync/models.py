"""
Data model shared by the scheduler, cache, subscription manager and sources.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Optional, Tuple

ChunkKey = Tuple[int, int]


@dataclass(frozen=True)
class Grid:
    """Grid dimensions, fixed for the session once discovered."""
    width: int
    height: int

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height


@dataclass(frozen=True)
class Cell:
    x: int
    y: int
    color: int  # 24-bit RGB
    last_updated: Optional[float] = None


@dataclass(frozen=True)
class Chunk:
    """
    Immutable block of cells anchored at ``key``.

    ``rows[dy][dx]`` is the cell at ``(key[0] + dx, key[1] + dy)``. Chunks are
    never mutated in place; updates build a new Chunk and replace the entry.
    """
    key: ChunkKey
    width: int
    height: int
    rows: Tuple[Tuple[Cell, ...], ...]

    def cell(self, x: int, y: int) -> Optional[Cell]:
        dx = x - self.key[0]
        dy = y - self.key[1]
        if 0 <= dx < self.width and 0 <= dy < self.height:
            return self.rows[dy][dx]
        return None

    def with_cell(self, cell: Cell) -> "Chunk":
        dx = cell.x - self.key[0]
        dy = cell.y - self.key[1]
        row = list(self.rows[dy])
        row[dx] = cell
        rows = self.rows[:dy] + (tuple(row),) + self.rows[dy + 1:]
        return Chunk(key=self.key, width=self.width, height=self.height, rows=rows)


class CallKind(Enum):
    READ = auto()   # pure read, safe to retry and to answer with a placeholder
    WRITE = auto()  # state-changing, never silently retried


class _NoPlaceholder:
    def __repr__(self) -> str:
        return "NO_PLACEHOLDER"


NO_PLACEHOLDER: Any = _NoPlaceholder()


@dataclass
class RemoteCall:
    """
    A remote method invocation routed through the scheduler.

    ``placeholder`` is what a timed-out read resolves with. Reads that must
    not be faked (initial contact) leave it as NO_PLACEHOLDER and raise.
    """
    method: str
    params: list = field(default_factory=list)
    kind: CallKind = CallKind.READ
    placeholder: Any = NO_PLACEHOLDER
    label: Optional[str] = None
    # Known before sending for locally signed writes
    reference: Optional[str] = None

    @property
    def signature(self) -> str:
        """Canonical signature: the 4-byte selector for eth_call, else the method."""
        if self.method == "eth_call" and self.params:
            tx = self.params[0]
            if isinstance(tx, dict):
                data = str(tx.get("data") or tx.get("input") or "")
                if len(data) >= 10:
                    return data[:10].lower()
        return self.method

    @property
    def has_placeholder(self) -> bool:
        return self.placeholder is not NO_PLACEHOLDER


@dataclass
class PendingRequest:
    """A RemoteCall waiting in (or running from) the scheduler queue."""
    call: RemoteCall
    future: Any  # asyncio.Future
    attempt: int = 0
    overload_retried: bool = False
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class CellChangedEvent:
    x: int
    y: int
    color: int
    actor: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class FeeChangedEvent:
    new_fee_wei: int
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class FeeSnapshot:
    wei: int
    eth: str
    usd: float


class WriteStatus(Enum):
    CONFIRMED = auto()
    SUBMITTED_UNCONFIRMED = auto()  # sent, outcome unknown; do not resubmit
    REJECTED_BY_USER = auto()
    FAILED = auto()


@dataclass(frozen=True)
class WriteOutcome:
    status: WriteStatus
    reference: Optional[str] = None
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status in (WriteStatus.CONFIRMED, WriteStatus.SUBMITTED_UNCONFIRMED)


class SourceMode(Enum):
    LIVE = auto()
    DEGRADED = auto()


@dataclass(frozen=True)
class ModeChange:
    mode: SourceMode
    reason: str
    timestamp: float = field(default_factory=time.time)
