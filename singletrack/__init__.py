"""Singletrack - single-writer state management for Python."""
from .errors import DispatchDepthError, SingletrackError, StoreNotConfiguredError
from .store import (
    HALT,
    Halt,
    StateCell,
    Store,
    Subscription,
    SubscriptionStrategy,
    combine_reducers,
)

__all__ = [
    "HALT",
    "DispatchDepthError",
    "Halt",
    "SingletrackError",
    "StateCell",
    "Store",
    "StoreNotConfiguredError",
    "Subscription",
    "SubscriptionStrategy",
    "combine_reducers",
]
