"""
Remote data sources package.

This package contains the source interface, the contract codec, and the
live and synthetic sources.
"""

from pixelsync.remote.rpc_source import RpcGridSource, RpcSourceConfig
from pixelsync.remote.source import EventChannel, GridSource
from pixelsync.remote.synthetic_source import SyntheticGridSource

__all__ = [
    "EventChannel",
    "GridSource",
    "RpcGridSource",
    "RpcSourceConfig",
    "SyntheticGridSource",
]
