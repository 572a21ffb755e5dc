"""
Degradation package.

This package contains the failure streak and the controller that swaps in
the synthetic source.
"""

from pixelsync.degradation.controller import DegradationConfig, DegradationController
from pixelsync.degradation.failure_streak import FailureStreak, FailureStreakConfig

__all__ = [
    "DegradationConfig",
    "DegradationController",
    "FailureStreak",
    "FailureStreakConfig",
]
