"""
Tests for GridCache: loading, atomic install, merge ordering, refresh, eviction.
"""
import asyncio

import pytest

from pixelsync.cache.grid_cache import GridCache, GridCacheConfig
from pixelsync.cache.viewport import Viewport
from pixelsync.errors import TransientRemoteError
from pixelsync.models import Grid
from pixelsync.remote.synthetic_source import SyntheticGridSource, checkerboard_color


class RecordingSource:
    """get_region backed by a color function, with failure/placeholder/gate hooks."""

    def __init__(self, color=0x111111):
        self.color = color
        self.calls = []
        self.fail_on = set()
        self.none_on = set()
        self.gate = None

    async def get_region(self, x, y, width, height):
        self.calls.append((x, y, width, height))
        if self.gate is not None:
            await self.gate.wait()
        if (x, y) in self.fail_on:
            raise TransientRemoteError("tile failed")
        if (x, y) in self.none_on:
            return None
        return [[self.color for _ in range(width)] for _ in range(height)]


def _cache(source, grid=Grid(20, 20), **cfg):
    defaults = dict(chunk_size=20, max_region_size=10, surface_width=200, surface_height=200)
    defaults.update(cfg)
    return GridCache(source, grid, GridCacheConfig(**defaults))


# 200x200 surface at scale 10 shows exactly the 20x20 cells at offset
ONE_CHUNK = Viewport(scale=10)


class TestLoading:

    @pytest.mark.asyncio
    async def test_non_positive_scale_is_rejected(self):
        source = RecordingSource()
        cache = _cache(source)
        with pytest.raises(ValueError):
            cache.ensure_viewport_loaded(Viewport(scale=0))
        assert cache.snapshot()["visible"] == 0
        assert source.calls == []
        await cache.close()

    @pytest.mark.asyncio
    async def test_viewport_load_installs_chunks(self):
        source = SyntheticGridSource(width=100, height=100)
        cache = GridCache(source, Grid(100, 100), GridCacheConfig(surface_width=1280, surface_height=800))
        started = cache.ensure_viewport_loaded(Viewport(scale=10))
        assert len(started) == 20
        assert all(cache.is_loading(k) and not cache.is_present(k) for k in started)

        await cache.wait_idle()
        assert all(cache.is_present(k) and not cache.is_loading(k) for k in started)
        assert cache.get_cell(5, 5).color == checkerboard_color(5, 5)
        assert cache.get_cell(99, 79).color == checkerboard_color(99, 79)
        await cache.close()

    @pytest.mark.asyncio
    async def test_get_cell_before_load_is_none(self):
        cache = _cache(RecordingSource())
        assert cache.get_cell(3, 3) is None
        assert cache.get_color(3, 3) == 0xEFEFEF
        assert cache.get_cell(-1, 0) is None

    @pytest.mark.asyncio
    async def test_chunk_fetched_in_bounded_tiles(self):
        source = RecordingSource()
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        assert source.calls == [(0, 0, 10, 10), (10, 0, 10, 10), (0, 10, 10, 10), (10, 10, 10, 10)]

    @pytest.mark.asyncio
    async def test_edge_chunk_region_is_clamped(self):
        source = RecordingSource()
        cache = _cache(source, grid=Grid(25, 13), surface_width=400, surface_height=400)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        assert (20, 0, 5, 10) in source.calls
        assert (20, 10, 5, 3) in source.calls
        assert cache.chunk((20, 0)).width == 5
        assert cache.chunk((20, 0)).height == 13

    @pytest.mark.asyncio
    async def test_repeat_ensure_does_not_refetch(self):
        source = RecordingSource()
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        assert cache.ensure_viewport_loaded(ONE_CHUNK) == []
        await cache.wait_idle()
        assert cache.ensure_viewport_loaded(ONE_CHUNK) == []
        assert len(source.calls) == 4


class TestAtomicInstall:

    @pytest.mark.asyncio
    async def test_failed_tile_installs_nothing(self):
        source = RecordingSource()
        source.fail_on.add((0, 10))
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        assert not cache.is_present((0, 0))
        assert not cache.is_loading((0, 0))
        assert cache.get_cell(0, 0) is None

    @pytest.mark.asyncio
    async def test_placeholder_tile_installs_nothing(self):
        source = RecordingSource()
        source.none_on.add((10, 0))
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        assert not cache.is_present((0, 0))
        # fetch stops at the first unusable tile
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_chunk_retried_on_next_ensure(self):
        source = RecordingSource()
        source.fail_on.add((0, 0))
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        source.fail_on.clear()
        assert cache.ensure_viewport_loaded(ONE_CHUNK) == [(0, 0)]
        await cache.wait_idle()
        assert cache.is_present((0, 0))


class TestMerge:

    @pytest.mark.asyncio
    async def test_identical_refresh_is_idempotent(self):
        source = RecordingSource()
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        first = cache.chunk((0, 0))
        assert first.cell(4, 4).last_updated is None

        cache.refresh_visible()
        await cache.wait_idle()
        assert cache.chunk((0, 0)) is first

    @pytest.mark.asyncio
    async def test_refresh_stamps_changed_cells(self):
        clock = iter([100.0, 200.0])
        source = RecordingSource(color=0x111111)
        cache = GridCache(source, Grid(20, 20), GridCacheConfig(surface_width=200, surface_height=200),
                          clock=lambda: next(clock))
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        source.color = 0x222222
        cache.refresh_visible()
        await cache.wait_idle()
        cell = cache.get_cell(7, 7)
        assert cell.color == 0x222222
        assert cell.last_updated == 200.0

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_chunk_visible(self):
        source = RecordingSource()
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()

        source.gate = asyncio.Event()
        source.color = 0x999999
        assert cache.refresh_visible() == [(0, 0)]
        await asyncio.sleep(0)
        assert cache.is_refreshing((0, 0))
        assert not cache.is_loading((0, 0))
        assert cache.get_cell(1, 1).color == 0x111111

        source.gate.set()
        await cache.wait_idle()
        assert cache.get_cell(1, 1).color == 0x999999
        assert not cache.is_refreshing((0, 0))

    @pytest.mark.asyncio
    async def test_event_during_refresh_wins_over_stale_data(self):
        source = RecordingSource(color=0x111111)
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()

        source.gate = asyncio.Event()
        cache.refresh_visible()
        await asyncio.sleep(0)
        assert cache.apply_remote_update(3, 3, 0xABCDEF, timestamp=42.0)
        assert cache.get_cell(3, 3).color == 0xABCDEF

        source.gate.set()
        await cache.wait_idle()
        cell = cache.get_cell(3, 3)
        assert cell.color == 0xABCDEF
        assert cell.last_updated == 42.0
        assert cache.get_cell(4, 4).color == 0x111111

    @pytest.mark.asyncio
    async def test_refresh_issued_after_event_wins(self):
        source = RecordingSource(color=0x111111)
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()

        cache.apply_remote_update(3, 3, 0xABCDEF)
        cache.refresh_visible()
        await cache.wait_idle()
        assert cache.get_cell(3, 3).color == 0x111111

    @pytest.mark.asyncio
    async def test_event_during_first_load_survives_merge(self):
        source = RecordingSource(color=0x111111)
        source.gate = asyncio.Event()
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await asyncio.sleep(0)
        assert cache.apply_remote_update(2, 2, 0x00FF00) is False

        source.gate.set()
        await cache.wait_idle()
        assert cache.get_cell(2, 2).color == 0x00FF00


class TestRemoteUpdates:

    def test_update_ignored_when_chunk_absent(self):
        cache = _cache(RecordingSource())
        assert cache.apply_remote_update(1, 1, 0x123456) is False
        assert cache.get_cell(1, 1) is None

    def test_update_outside_grid_ignored(self):
        cache = _cache(RecordingSource())
        assert cache.apply_remote_update(50, 1, 0x123456) is False

    @pytest.mark.asyncio
    async def test_update_replaces_chunk_copy_on_write(self):
        cache = _cache(RecordingSource())
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        before = cache.chunk((0, 0))

        assert cache.apply_remote_update(1, 2, 0x123456, timestamp=7.0)
        after = cache.chunk((0, 0))
        assert after is not before
        assert before.cell(1, 2).color == 0x111111
        assert after.cell(1, 2).color == 0x123456
        assert after.cell(1, 2).last_updated == 7.0


class TestRefreshLoop:

    @pytest.mark.asyncio
    async def test_refresh_loop_refetches_visible_chunks(self):
        source = RecordingSource()
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await cache.wait_idle()
        calls_after_load = len(source.calls)

        cache.start_refresh(0.01)
        await asyncio.sleep(0.05)
        await cache.stop_refresh()
        await cache.wait_idle()
        assert len(source.calls) > calls_after_load
        await cache.close()

    @pytest.mark.asyncio
    async def test_close_cancels_in_flight_fetches(self):
        source = RecordingSource()
        source.gate = asyncio.Event()
        cache = _cache(source)
        cache.ensure_viewport_loaded(ONE_CHUNK)
        await asyncio.sleep(0)
        await cache.close()
        assert not cache.is_loading((0, 0))
        assert cache.snapshot()["in_flight_tasks"] == 0


class TestEviction:

    @pytest.mark.asyncio
    async def test_lru_evicts_chunks_outside_viewport(self):
        source = RecordingSource()
        cache = _cache(source, grid=Grid(60, 20), max_chunks=2, surface_width=20, surface_height=20)
        for offset in (0, -20, -40):
            cache.ensure_viewport_loaded(Viewport(scale=1, offset_x=offset))
            await cache.wait_idle()
        assert not cache.is_present((0, 0))
        assert cache.is_present((20, 0))
        assert cache.is_present((40, 0))

    @pytest.mark.asyncio
    async def test_unbounded_by_default(self):
        source = RecordingSource()
        cache = _cache(source, grid=Grid(60, 20), surface_width=20, surface_height=20)
        for offset in (0, -20, -40):
            cache.ensure_viewport_loaded(Viewport(scale=1, offset_x=offset))
            await cache.wait_idle()
        assert cache.snapshot()["present"] == 3
