"""
GridCache: chunked local replica of the remote grid.

Readers call ``get_cell`` synchronously and only ever see whole chunks:
a chunk is built off to the side and installed with one dict assignment.

State per chunk key:
    present     in ``_chunks``
    loading     first fetch in flight (never also present)
    refreshing  re-fetch of a present chunk in flight; readers keep the
                old chunk until the new one is installed

Ordering between pushed updates and fetches: every update takes a sequence
number. An update landing while a fetch of its chunk is in flight leaves a
mark; when the fetch merges, marked cells newer than the fetch's issue
sequence keep the pushed color.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from pixelsync.cache.viewport import Viewport, chunk_extent, chunk_key_for, covering_chunks
from pixelsync.models import Cell, Chunk, ChunkKey, Grid
from pixelsync.remote.source import GridSource

if TYPE_CHECKING:
    from pixelsync.monitoring.metrics import SyncMetrics

log = logging.getLogger("pixelsync")

# (sequence, color, timestamp)
_Mark = Tuple[int, int, float]


@dataclass
class GridCacheConfig:
    """Configuration for GridCache."""
    chunk_size: int = 20
    max_region_size: int = 10
    placeholder_color: int = 0xEFEFEF
    surface_width: int = 1280
    surface_height: int = 800
    refresh_interval: float = 1.0
    # 0 keeps every chunk ever loaded
    max_chunks: int = 0
    log_event_callback: Optional[Callable[..., None]] = None


class GridCache:
    """
    Usage:
        cache = GridCache(source, grid, GridCacheConfig())
        cache.ensure_viewport_loaded(Viewport())
        cache.start_refresh()
        cell = cache.get_cell(12, 7)
        ...
        await cache.close()
    """

    def __init__(
        self,
        source: GridSource,
        grid: Grid,
        config: Optional[GridCacheConfig] = None,
        metrics: Optional["SyncMetrics"] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.source = source
        self.grid = grid
        self.config = config or GridCacheConfig()
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._log_event = self.config.log_event_callback or self._default_log

        self._chunks: "OrderedDict[ChunkKey, Chunk]" = OrderedDict()
        self._loading: Set[ChunkKey] = set()
        self._refreshing: Set[ChunkKey] = set()
        self._marks: Dict[ChunkKey, Dict[Tuple[int, int], _Mark]] = {}
        self._seq = 0

        self._viewport: Optional[Viewport] = None
        self._visible: List[ChunkKey] = []
        self._tasks: Set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._closed = False

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_cell(self, x: int, y: int) -> Optional[Cell]:
        """Cached cell, or None when its chunk is not loaded."""
        if not self.grid.contains(x, y):
            return None
        chunk = self._chunks.get(chunk_key_for(x, y, self.config.chunk_size))
        if chunk is None:
            return None
        return chunk.cell(x, y)

    def get_color(self, x: int, y: int) -> int:
        """Cached color, or the placeholder color when unknown."""
        cell = self.get_cell(x, y)
        return cell.color if cell is not None else self.config.placeholder_color

    def chunk(self, key: ChunkKey) -> Optional[Chunk]:
        return self._chunks.get(key)

    def is_present(self, key: ChunkKey) -> bool:
        return key in self._chunks

    def is_loading(self, key: ChunkKey) -> bool:
        return key in self._loading

    def is_refreshing(self, key: ChunkKey) -> bool:
        return key in self._refreshing

    @property
    def viewport(self) -> Optional[Viewport]:
        return self._viewport

    @property
    def visible_chunks(self) -> List[ChunkKey]:
        return list(self._visible)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "present": len(self._chunks),
            "loading": len(self._loading),
            "refreshing": len(self._refreshing),
            "visible": len(self._visible),
            "in_flight_tasks": len(self._tasks),
            "seq": self._seq,
        }

    # ------------------------------------------------------------------
    # Viewport and loading
    # ------------------------------------------------------------------

    def ensure_viewport_loaded(self, viewport: Viewport) -> List[ChunkKey]:
        """
        Make ``viewport`` the region of interest and start fetching any
        covering chunk that is neither present nor loading. Returns the keys
        whose fetch was started; does not wait for them.
        """
        visible = covering_chunks(
            viewport,
            self.config.surface_width,
            self.config.surface_height,
            self.grid,
            self.config.chunk_size,
        )
        self._viewport = viewport
        self._visible = visible
        started = []
        for key in self._visible:
            if key in self._chunks:
                self._chunks.move_to_end(key)
                continue
            if key in self._loading or key in self._refreshing:
                continue
            self._start_fetch(key, refresh=False)
            started.append(key)
        return started

    def refresh_visible(self) -> List[ChunkKey]:
        """One freshness pass over the chunks covering the current viewport."""
        started = []
        for key in self._visible:
            if key in self._loading or key in self._refreshing:
                continue
            self._start_fetch(key, refresh=key in self._chunks)
            started.append(key)
        return started

    def start_refresh(self, interval: Optional[float] = None) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(
            self._refresh_loop(interval if interval is not None else self.config.refresh_interval)
        )

    async def stop_refresh(self) -> None:
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        await asyncio.gather(self._refresh_task, return_exceptions=True)
        self._refresh_task = None

    async def _refresh_loop(self, interval: float) -> None:
        while not self._closed:
            await self._sleep(interval)
            try:
                self.refresh_visible()
            except Exception as exc:
                self._log_event("cache_refresh_error", level=logging.ERROR, err=str(exc))

    async def wait_idle(self) -> None:
        """Wait for every in-flight fetch (including ones started meanwhile)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        await self.stop_refresh()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _start_fetch(self, key: ChunkKey, refresh: bool) -> None:
        if self._closed:
            return
        (self._refreshing if refresh else self._loading).add(key)
        self._marks[key] = {}
        task = asyncio.create_task(self._fetch_chunk(key, self._seq, refresh))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fetch_chunk(self, key: ChunkKey, issue_seq: int, refresh: bool) -> None:
        width, height = chunk_extent(key, self.grid, self.config.chunk_size)
        started = time.monotonic()
        outcome = "error"
        try:
            colors = await self._fetch_region(key, width, height)
            if colors is None:
                outcome = "placeholder"
                self._log_event("chunk_fetch_incomplete", level=logging.WARNING,
                                key=f"{key[0]},{key[1]}", refresh=refresh)
            else:
                changed = self._merge(key, width, height, colors, issue_seq)
                outcome = "ok"
                self._log_event("chunk_merged", level=logging.DEBUG, key=f"{key[0]},{key[1]}",
                                refresh=refresh, changed=changed,
                                ms=round((time.monotonic() - started) * 1000, 1))
        except Exception as exc:
            self._log_event("chunk_fetch_error", level=logging.WARNING, key=f"{key[0]},{key[1]}",
                            refresh=refresh, err_type=type(exc).__name__, err=str(exc))
        finally:
            self._loading.discard(key)
            self._refreshing.discard(key)
            self._marks.pop(key, None)
            if self._metrics is not None:
                self._metrics.chunk_fetches.labels(outcome=outcome).inc()
                self._metrics.cached_chunks.set(len(self._chunks))

    async def _fetch_region(self, key: ChunkKey, width: int, height: int) -> Optional[List[List[int]]]:
        """
        Fetch the chunk's rectangle in tiles of at most ``max_region_size``
        per side, sequentially. None if any tile came back as a placeholder.
        """
        step = self.config.max_region_size
        ox, oy = key
        rows: List[List[int]] = [[self.config.placeholder_color] * width for _ in range(height)]
        for ty in range(0, height, step):
            tile_h = min(step, height - ty)
            for tx in range(0, width, step):
                tile_w = min(step, width - tx)
                tile = await self.source.get_region(ox + tx, oy + ty, tile_w, tile_h)
                if tile is None:
                    return None
                for dy in range(tile_h):
                    rows[ty + dy][tx:tx + tile_w] = tile[dy][:tile_w]
        return rows

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def _merge(self, key: ChunkKey, width: int, height: int, colors: List[List[int]], issue_seq: int) -> int:
        """Install fetched colors for ``key``. Returns the number of cells that changed."""
        old = self._chunks.get(key)
        marks = self._marks.get(key) or {}
        now = self._clock()
        ox, oy = key
        changed = 0
        rows = []
        for dy in range(height):
            row = []
            for dx in range(width):
                x, y = ox + dx, oy + dy
                color = colors[dy][dx]
                stamp: Optional[float] = now
                mark = marks.get((x, y))
                if mark is not None and mark[0] > issue_seq:
                    color, stamp = mark[1], mark[2]
                prev = old.cell(x, y) if old is not None else None
                if prev is not None and prev.color == color:
                    row.append(prev)
                    continue
                if prev is None and mark is None:
                    # first sight of this cell; when it was painted is unknown
                    stamp = None
                row.append(Cell(x=x, y=y, color=color, last_updated=stamp))
                changed += 1
            rows.append(tuple(row))

        if old is None or changed:
            self._chunks[key] = Chunk(key=key, width=width, height=height, rows=tuple(rows))
        self._chunks.move_to_end(key)
        self._evict(keep=key)
        return changed

    def apply_remote_update(self, x: int, y: int, color: int, timestamp: Optional[float] = None) -> bool:
        """
        Apply a pushed cell change. Returns True if a cached chunk changed.

        Ignored when the chunk is not cached; if a fetch of the chunk is in
        flight the update is still remembered and wins over that fetch.
        """
        if not self.grid.contains(x, y):
            return False
        self._seq += 1
        stamp = timestamp if timestamp is not None else self._clock()
        key = chunk_key_for(x, y, self.config.chunk_size)

        marks = self._marks.get(key)
        if marks is not None:
            marks[(x, y)] = (self._seq, color, stamp)

        chunk = self._chunks.get(key)
        if chunk is None:
            return False
        self._chunks[key] = chunk.with_cell(Cell(x=x, y=y, color=color, last_updated=stamp))
        return True

    def _evict(self, keep: ChunkKey) -> None:
        limit = self.config.max_chunks
        if limit <= 0 or len(self._chunks) <= limit:
            return
        protected = set(self._visible)
        protected.add(keep)
        for key in list(self._chunks):
            if len(self._chunks) <= limit:
                break
            if key in protected or key in self._refreshing:
                continue
            del self._chunks[key]
            self._log_event("chunk_evicted", level=logging.DEBUG, key=f"{key[0]},{key[1]}")
