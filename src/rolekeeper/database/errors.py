"""Exceptions raised by the storage layer.

Repositories catch these and return a safe default, so nothing in this module
should ever reach the scheduler loop or a command handler.
"""


class StoreError(Exception):
    """Base class for every storage failure."""


class DatabaseUnavailableError(StoreError):
    """No live session exists, or the bounded reconnect cycle was exhausted."""


class StoreTimeoutError(StoreError):
    """A single store call exceeded the configured query timeout."""
