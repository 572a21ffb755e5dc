"""
Infrastructure package.

This package contains the HTTP and WebSocket transports and logging configuration.
"""

from pixelsync.infra.logging_cfg import build_logger, event_logger, log_event
from pixelsync.infra.rpc_transport import RpcTransport
from pixelsync.infra.ws_transport import LogStreamChannel

__all__ = [
    "build_logger",
    "event_logger",
    "log_event",
    "RpcTransport",
    "LogStreamChannel",
]
