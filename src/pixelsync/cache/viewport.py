"""
Viewport geometry: which grid cells are visible and which chunks cover them.

Rectangles are half-open, ``[x0, x1) x [y0, y1)``, in grid coordinates.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from pixelsync.core.utils import ceil_to, floor_to
from pixelsync.models import ChunkKey, Grid

Rect = Tuple[int, int, int, int]

DEFAULT_SCALE = 10.0
MIN_SCALE = 1.0
MAX_SCALE = 40.0


@dataclass(frozen=True)
class Viewport:
    """
    Consumer's view onto the grid: ``scale`` surface units per cell, and
    the surface position of cell (0, 0).
    """
    scale: float = DEFAULT_SCALE
    offset_x: float = 0.0
    offset_y: float = 0.0
    selection: Optional[Tuple[int, int]] = None

    def with_scale(self, scale: float, min_scale: float = MIN_SCALE, max_scale: float = MAX_SCALE) -> "Viewport":
        return replace(self, scale=max(min_scale, min(max_scale, scale)))

    def with_offset(self, offset_x: float, offset_y: float) -> "Viewport":
        return replace(self, offset_x=offset_x, offset_y=offset_y)

    def with_selection(self, selection: Optional[Tuple[int, int]]) -> "Viewport":
        return replace(self, selection=selection)

    def reset(self) -> "Viewport":
        # selection survives a reset
        return Viewport(selection=self.selection)

    def cell_at(self, surface_x: float, surface_y: float) -> Tuple[int, int]:
        """Grid cell under a surface point."""
        return (
            math.floor((surface_x - self.offset_x) / self.scale),
            math.floor((surface_y - self.offset_y) / self.scale),
        )


def visible_rect(viewport: Viewport, surface_width: int, surface_height: int, grid: Grid) -> Rect:
    """Visible cells clamped to the grid. May be empty (x0 >= x1 or y0 >= y1)."""
    s = viewport.scale
    if not s > 0:
        raise ValueError(f"viewport scale must be positive, got {s!r}")
    x0 = max(0, math.floor(-viewport.offset_x / s))
    y0 = max(0, math.floor(-viewport.offset_y / s))
    x1 = min(grid.width, math.ceil((surface_width - viewport.offset_x) / s))
    y1 = min(grid.height, math.ceil((surface_height - viewport.offset_y) / s))
    return x0, y0, x1, y1


def chunk_key_for(x: int, y: int, chunk_size: int) -> ChunkKey:
    return floor_to(x, chunk_size), floor_to(y, chunk_size)


def chunk_extent(key: ChunkKey, grid: Grid, chunk_size: int) -> Tuple[int, int]:
    """Width and height of the chunk at ``key``, truncated at the grid edge."""
    return (
        max(0, min(chunk_size, grid.width - key[0])),
        max(0, min(chunk_size, grid.height - key[1])),
    )


def chunks_for_rect(x0: int, y0: int, x1: int, y1: int, chunk_size: int) -> List[ChunkKey]:
    """Chunk keys covering ``[x0, x1) x [y0, y1)``, row-major."""
    if x0 >= x1 or y0 >= y1:
        return []
    start_x = floor_to(x0, chunk_size)
    start_y = floor_to(y0, chunk_size)
    end_x = ceil_to(x1, chunk_size)
    end_y = ceil_to(y1, chunk_size)
    return [
        (cx, cy)
        for cy in range(start_y, end_y, chunk_size)
        for cx in range(start_x, end_x, chunk_size)
    ]


def covering_chunks(
    viewport: Viewport,
    surface_width: int,
    surface_height: int,
    grid: Grid,
    chunk_size: int,
) -> List[ChunkKey]:
    """Smallest chunk set whose union contains every visible in-grid cell."""
    x0, y0, x1, y1 = visible_rect(viewport, surface_width, surface_height, grid)
    return chunks_for_rect(x0, y0, x1, y1, chunk_size)
