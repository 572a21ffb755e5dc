"""
Request scheduling package.
"""

from pixelsync.scheduler.request_scheduler import DEFAULT_KNOWN_BAD, RequestScheduler, SchedulerConfig

__all__ = [
    "DEFAULT_KNOWN_BAD",
    "RequestScheduler",
    "SchedulerConfig",
]
