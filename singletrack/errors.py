"""Singletrack errors."""


class SingletrackError(Exception):
    """Base class for errors raised by a store."""


class StoreNotConfiguredError(SingletrackError, RuntimeError):
    """An action was dispatched into a store with no reducer bound."""


class DispatchDepthError(SingletrackError, RecursionError):
    """Nested dispatches exceeded the store's configured max_depth."""
