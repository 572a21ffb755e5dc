"""
Core utilities package.

This package contains color/currency conversions and small helpers.
"""

from pixelsync.core.colors import (
    color_from_bytes3,
    color_to_bytes3,
    eth_to_usd,
    format_eth,
    format_hex_color,
    parse_hex_color,
)
from pixelsync.core.utils import backoff_delay, safe_call

__all__ = [
    "color_from_bytes3",
    "color_to_bytes3",
    "eth_to_usd",
    "format_eth",
    "format_hex_color",
    "parse_hex_color",
    "backoff_delay",
    "safe_call",
]
