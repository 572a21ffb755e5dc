"""
Configuration package.

This package contains settings loading/validation and the network table.
"""

from pixelsync.config.networks import NETWORK_CONFIGS, DEFAULT_CHAIN_ID, NetworkConfig, get_network
from pixelsync.config.settings import Settings

__all__ = [
    "Settings",
    "NETWORK_CONFIGS",
    "DEFAULT_CHAIN_ID",
    "NetworkConfig",
    "get_network",
]
