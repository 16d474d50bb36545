"""Realtime change feed and the listener that keeps it alive."""

from .feed import (
    ChangeFeed,
    ChangeHandlers,
    FeedError,
    Subscription,
    SubscriptionStatus,
)
from .listener import (
    ListenerState,
    ReconnectingChangeListener,
    backoff_delay,
    classify_failure,
)
from .phoenix import SupabaseRealtimeFeed

__all__ = [
    "ChangeFeed",
    "ChangeHandlers",
    "FeedError",
    "ListenerState",
    "ReconnectingChangeListener",
    "Subscription",
    "SubscriptionStatus",
    "SupabaseRealtimeFeed",
    "backoff_delay",
    "classify_failure",
]
