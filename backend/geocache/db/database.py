"""Storage backend selection.

Resolves the backend configured by ``Settings.cache_backend``. The
in-memory backend is shared by the whole process so that every request
sees the same data; PostGIS backends are cheap handles over a database
and are created per call.

Example:
    Build a cache for the configured backend:
        >>> from geocache.core.config import get_settings
        >>> from geocache.db.database import get_backend
        >>> from geocache.services.cache import Cache
        >>> cache = Cache(get_backend(get_settings()))
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from geocache.core import errors
from geocache.db import memory

if TYPE_CHECKING:
    from geocache.core import config
    from geocache.db import backend as db_backend

_memory_backend: memory.InMemoryBackend | None = None


def get_backend(settings: config.Settings) -> db_backend.StorageBackend:
    """Factory function returning the configured storage backend.

    Args:
        settings: Application settings naming the backend.

    Returns:
        The process-wide InMemoryBackend, or a new PostgisBackend.

    Raises:
        ConfigurationError: If the backend name is unknown.
    """
    global _memory_backend
    if settings.cache_backend == "memory":
        if _memory_backend is None:
            _memory_backend = memory.InMemoryBackend()
        return _memory_backend
    if settings.cache_backend == "postgis":
        from geocache.db import postgis

        return postgis.PostgisBackend(settings)
    raise errors.ConfigurationError(
        f'Unknown cache backend "{settings.cache_backend}"'
    )


def _reset() -> None:
    """Drop the shared in-memory backend (for tests)."""
    global _memory_backend
    _memory_backend = None
