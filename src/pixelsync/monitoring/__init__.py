"""
Monitoring package.
"""

from pixelsync.monitoring.metrics import SyncMetrics, start_metrics_server

__all__ = [
    "SyncMetrics",
    "start_metrics_server",
]
