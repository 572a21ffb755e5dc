"""
Logical data-source interface shared by the live and synthetic sources and
by the degradation controller that fronts them.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Protocol

from pixelsync.models import CellChangedEvent, FeeChangedEvent, Grid, WriteOutcome

CellHandler = Callable[[CellChangedEvent], None]
FeeHandler = Callable[[FeeChangedEvent], None]


class EventChannel(Protocol):
    """One open push connection. Finishes (or raises) when the transport drops."""

    async def wait_closed(self) -> None: ...

    async def close(self) -> None: ...


class GridSource(Protocol):
    """
    Read/write access to the remote grid.

    ``get_cell`` / ``get_region`` / ``get_fee`` return None when the read was
    answered with a placeholder (the remote did not reply in time);
    ``get_dimensions`` never does, it raises instead.
    """

    async def get_dimensions(self) -> Grid: ...

    async def get_cell(self, x: int, y: int) -> Optional[int]: ...

    async def get_region(self, x: int, y: int, width: int, height: int) -> Optional[List[List[int]]]: ...

    async def get_fee(self) -> Optional[int]: ...

    async def set_cell(self, x: int, y: int, color: int, fee_wei: int) -> WriteOutcome: ...

    async def open_event_channel(self, on_cell: CellHandler, on_fee: FeeHandler) -> EventChannel: ...

    async def close(self) -> None: ...
