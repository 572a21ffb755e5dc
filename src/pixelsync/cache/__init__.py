"""
Grid cache package.

This package contains the chunked cache and viewport geometry.
"""

from pixelsync.cache.grid_cache import GridCache, GridCacheConfig
from pixelsync.cache.viewport import Viewport, chunks_for_rect, covering_chunks

__all__ = [
    "GridCache",
    "GridCacheConfig",
    "Viewport",
    "chunks_for_rect",
    "covering_chunks",
]
