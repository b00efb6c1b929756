"""Storage backend interfaces and capability detection.

A backend is any object implementing ``StorageBackend``. Optional
operations are split into their own small protocols; a backend opts into
one simply by defining the method. The cache checks for a capability with
``has_capability`` right before using it, so backends never register or
declare anything up front.

Example:
    Check a backend before calling an optional operation:
        >>> from geocache.db import backend as db_backend
        >>> from geocache.db.memory import InMemoryBackend
        >>> store = InMemoryBackend()
        >>> db_backend.has_capability(store, db_backend.StreamCapable)
        True
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from geocache.db import models as db_models


@runtime_checkable
class StorageBackend(Protocol):
    """Mandatory operations every storage backend implements.

    Tables are composed key strings (``type:key`` for inserts and selects,
    ``type:key:layer`` for removal and metadata). Implementations raise
    their own exceptions; the cache passes them through unchanged.
    """

    async def insert(
        self, table: str, data: Mapping[str, Any], layer_id: int
    ) -> Any: ...

    async def insert_partial(
        self, table: str, data: Mapping[str, Any], layer_id: int
    ) -> Any: ...

    async def remove(self, table: str) -> Any: ...

    async def select(self, table: str, query: db_models.Query) -> Any: ...

    async def get_info(self, table: str) -> Any: ...

    async def update_info(self, table: str, info: Mapping[str, Any]) -> Any: ...

    async def get_count(self, table: str, query: db_models.Query) -> int: ...

    async def get_stat(
        self,
        table: str,
        field: str,
        out_name: str,
        stat_type: str,
        query: db_models.Query,
    ) -> Any: ...

    async def service_count(self, service_type: str) -> int: ...

    async def service_get(
        self, service_type: str, service_id: str | None = None
    ) -> Any: ...

    async def service_register(
        self, service_type: str, info: Mapping[str, Any]
    ) -> Any: ...

    async def service_remove(self, service_type: str, service_id: str) -> Any: ...


@runtime_checkable
class ExtentCapable(Protocol):
    """Backend that can compute the bounding box of a table."""

    async def get_extent(
        self, table: str, query: db_models.Query
    ) -> db_models.BBox | None: ...


@runtime_checkable
class IndexCapable(Protocol):
    """Backend that can add indexes to a table."""

    async def add_indexes(self, table: str, options: Mapping[str, Any]) -> Any: ...


@runtime_checkable
class StreamCapable(Protocol):
    """Backend that can export a table as a stream of single features."""

    def create_export_stream(
        self, table: str, query: db_models.Query
    ) -> AsyncIterator[dict[str, Any]]: ...


def has_capability(backend: object, capability: type) -> bool:
    """Return True if ``backend`` implements the ``capability`` protocol.

    Evaluated on every call; the result is never cached.
    """
    return isinstance(backend, capability)
