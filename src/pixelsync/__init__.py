"""
pixelsync: local, continuously synchronized replica of a remote cell grid.
"""

from pixelsync.cache.viewport import Viewport
from pixelsync.config.settings import Settings
from pixelsync.models import Cell, Grid, SourceMode, WriteOutcome, WriteStatus
from pixelsync.session import GridSession

__version__ = "0.1.0"

__all__ = [
    "Cell",
    "Grid",
    "GridSession",
    "Settings",
    "SourceMode",
    "Viewport",
    "WriteOutcome",
    "WriteStatus",
]
