"""Exceptions raised by the vaccination bucket engine.

Storage failures are never wrapped: whatever the backing store raises
propagates to the caller unchanged after the transaction is rolled back.
"""


class BucketEngineError(Exception):
    """Base class for errors raised by this package."""


class BucketConflictError(BucketEngineError):
    """A dose key is already held by another externally-owned state."""


class ConfigurationError(BucketEngineError, ValueError):
    """Invalid parameters file or calendar definition."""
