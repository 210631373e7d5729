"""
tieredcache exception hierarchy.

All custom exceptions inherit from TieredCacheException so callers can
catch a single base type when they want a broad safety net.
"""


class TieredCacheException(Exception):
    """Base exception for all tieredcache errors."""


class ConfigurationError(TieredCacheException, ValueError):
    """Raised when configuration is invalid or cannot be loaded."""


class FetchError(TieredCacheException):
    """Raised when the remote source could not produce a value."""


class FetchTimeoutError(FetchError):
    """Raised when a remote fetch does not complete within its timeout."""


class RemoteFetchDisabledError(FetchError):
    """Raised when a fetch is suppressed by configuration or the egress guard."""


class DurableTierError(TieredCacheException):
    """Raised when a durable-tier read, write or delete fails."""


class SweeperError(TieredCacheException):
    """Raised on invalid periodic-sweep lifecycle transitions."""
