"""Exception types shared by the cache, its backends and the API layer.

Errors raised by a storage backend are never wrapped by the cache; the
classes below are only raised by geocache itself or by the bundled
backends. The API layer maps them to HTTP status codes.
"""


class GeocacheError(Exception):
    """Base class for all geocache errors."""


class UnsupportedCapabilityError(GeocacheError, NotImplementedError):
    """Raised when an optional backend operation is not implemented.

    Distinguishes "this backend cannot do that" from "the backend tried and
    failed", which surfaces as whatever the backend raised.

    Example:
        >>> try:
        ...     await cache.add_indexes("obs:k1:0", {"fields": ["name"]})
        ... except UnsupportedCapabilityError as e:
        ...     print(e)  # This cache does not support indexes
    """


class ConfigurationError(GeocacheError, RuntimeError):
    """Raised at load time when the application is wired incorrectly.

    Covers backends missing mandatory operations, unknown backend names,
    provider routes naming undefined controller handlers, and invalid
    HTTP methods in route declarations.
    """


class InvalidQueryError(GeocacheError, ValueError):
    """Raised when query options cannot be translated or interpreted."""


class CacheMissError(GeocacheError, LookupError):
    """Raised by the bundled backends when a table or service is unknown."""
