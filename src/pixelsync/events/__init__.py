"""
Push events package.

This package contains the subscription manager and the activity feed.
"""

from pixelsync.events.activity_feed import ActivityEntry, ActivityFeed
from pixelsync.events.subscription_manager import (
    SubscriptionConfig,
    SubscriptionHandle,
    SubscriptionManager,
    SubscriptionState,
)

__all__ = [
    "ActivityEntry",
    "ActivityFeed",
    "SubscriptionConfig",
    "SubscriptionHandle",
    "SubscriptionManager",
    "SubscriptionState",
]
