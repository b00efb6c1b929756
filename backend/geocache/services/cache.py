"""Cache facade used by providers and controllers to reach storage.

The ``Cache`` exposes one contract for feature storage, dataset metadata,
statistics, export streams and the service registry, whatever backend is
plugged in underneath. It composes storage keys, translates geoservices
options and delegates to the backend. Results and errors coming back from
the backend are returned or raised unchanged.

Optional backend operations (extent, indexes, export streams) are checked
right before use and degrade in a defined way when missing:

- ``get_extent`` returns None,
- ``add_indexes`` raises ``UnsupportedCapabilityError`` when awaited,
- ``create_stream`` raises ``UnsupportedCapabilityError`` immediately,
  before any coroutine is created, because its return value is the stream.

Example:
    Store and read back a provider dataset:
        >>> from geocache.db.memory import InMemoryBackend
        >>> from geocache.services.cache import Cache
        >>> cache = Cache(InMemoryBackend())
        >>> await cache.insert("obs", "k1", geojson, 0)
        >>> collection = await cache.get("obs", "k1", {"layer": 0})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from geocache.core import errors
from geocache.db import backend as db_backend
from geocache.db import models as db_models
from geocache.services import query as query_translator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

logger = logging.getLogger(__name__)


class Cache:
    """Facade over an injected storage backend.

    Attributes:
        db: The storage backend every operation delegates to.
    """

    def __init__(self, db: db_backend.StorageBackend) -> None:
        """Wrap a storage backend.

        Args:
            db: Object implementing the mandatory StorageBackend operations.

        Raises:
            ConfigurationError: If ``db`` lacks a mandatory operation.
        """
        if not isinstance(db, db_backend.StorageBackend):
            raise errors.ConfigurationError(
                f"{type(db).__name__} does not implement the storage "
                "backend interface"
            )
        self.db = db

    async def insert(
        self,
        provider_type: str,
        key: str,
        data: Mapping[str, Any],
        layer_id: int,
    ) -> Any:
        """Insert GeoJSON for a provider dataset.

        Args:
            provider_type: The provider type, e.g. "obs".
            key: Provider-defined dataset id.
            data: GeoJSON FeatureCollection, stored verbatim.
            layer_id: Layer of the dataset to write to.

        Returns:
            Whatever the backend returns.
        """
        table = db_models.compose_key(provider_type, key)
        logger.debug("insert %s layer=%s", table, layer_id)
        return await self.db.insert(table, data, layer_id)

    async def insert_partial(
        self,
        provider_type: str,
        key: str,
        data: Mapping[str, Any],
        layer_id: int,
    ) -> Any:
        """Append features to a dataset that was already inserted.

        Same arguments and result as ``insert``.
        """
        table = db_models.compose_key(provider_type, key)
        logger.debug("insert_partial %s layer=%s", table, layer_id)
        return await self.db.insert_partial(table, data, layer_id)

    async def remove(
        self,
        provider_type: str,
        key: str,
        options: Mapping[str, Any] | None = None,
    ) -> bool:
        """Remove one layer of a provider dataset.

        Args:
            provider_type: The provider type.
            key: Provider-defined dataset id.
            options: Mapping whose ``layer`` selects the layer (default 0).

        Returns:
            True once the backend has removed the layer.
        """
        layer = (options or {}).get("layer") or 0
        table = db_models.compose_key(provider_type, key, layer)
        logger.debug("remove %s", table)
        await self.db.remove(table)
        return True

    async def get(
        self,
        provider_type: str,
        key: str,
        options: Mapping[str, Any] | None = None,
    ) -> Any:
        """Select features of a provider dataset.

        The table is ``type:key``; the layer travels inside the translated
        query instead of the key.

        Args:
            provider_type: The provider type.
            key: Provider-defined dataset id.
            options: Geoservices options such as layer, where, geometry
                or orderByFields.

        Returns:
            The backend's select result, typically a FeatureCollection.

        Raises:
            InvalidQueryError: If the options cannot be translated.
        """
        table = db_models.compose_key(provider_type, key)
        query = self.decode_geoservices(options)
        logger.debug("select %s layer=%s", table, query.layer)
        return await self.db.select(table, query)

    @staticmethod
    def decode_geoservices(
        options: Mapping[str, Any] | None = None,
    ) -> db_models.Query:
        """Translate geoservices options; see ``services.query``."""
        return query_translator.decode_geoservices(options)

    async def get_info(self, table: str) -> Any:
        """Get the metadata stored for a table."""
        return await self.db.get_info(table)

    async def update_info(self, table: str, info: Mapping[str, Any]) -> Any:
        """Update the metadata stored for a table."""
        return await self.db.update_info(table, info)

    async def get_count(
        self, table: str, options: Mapping[str, Any] | None = None
    ) -> int:
        """Count the features of a table matching where/geometry options."""
        return await self.db.get_count(table, self.decode_geoservices(options))

    async def get_extent(
        self, table: str, options: Mapping[str, Any] | None = None
    ) -> db_models.BBox | None:
        """Get the bounding box of the features of a table.

        Returns:
            (xmin, ymin, xmax, ymax), or None when the backend cannot
            compute extents.
        """
        if not db_backend.has_capability(self.db, db_backend.ExtentCapable):
            logger.warning(
                "%s does not support extents, returning none for %s",
                type(self.db).__name__,
                table,
            )
            return None
        query = self.decode_geoservices(options)
        return await self.db.get_extent(table, query)  # type: ignore[attr-defined]

    async def get_stat(
        self,
        table: str,
        field: str,
        out_name: str,
        stat_type: str,
        options: Mapping[str, Any] | None = None,
    ) -> Any:
        """Compute a statistic over a feature property.

        Args:
            table: The table to compute the statistic on.
            field: Property the statistic is computed from.
            out_name: Name of the output field.
            stat_type: One of min, max, avg, stddev, count or sum.
            options: Geoservices options such as where, geometry or
                groupByFieldsForStatistics.
        """
        query = self.decode_geoservices(options)
        return await self.db.get_stat(table, field, out_name, stat_type, query)

    async def service_count(self, service_type: str) -> int:
        """Count the services registered for a service type."""
        return await self.db.service_count(service_type)

    async def service_get(
        self, service_type: str, service_id: str | None = None
    ) -> Any:
        """Get one registered service, or all of a type when no id is given."""
        return await self.db.service_get(service_type, service_id)

    async def service_register(
        self, service_type: str, info: Mapping[str, Any]
    ) -> Any:
        """Register a service from a mapping with an ``id`` and a ``host``."""
        return await self.db.service_register(service_type, info)

    async def service_remove(self, service_type: str, service_id: str) -> Any:
        """Remove a registered service."""
        return await self.db.service_remove(service_type, service_id)

    async def add_indexes(self, table: str, options: Mapping[str, Any]) -> Any:
        """Add indexes to a table if the backend supports it.

        Args:
            table: The table to add indexes to.
            options: Describes which indexes to create.

        Raises:
            UnsupportedCapabilityError: If the backend cannot add indexes.
        """
        if not db_backend.has_capability(self.db, db_backend.IndexCapable):
            raise errors.UnsupportedCapabilityError(
                "This cache does not support indexes"
            )
        return await self.db.add_indexes(table, options)  # type: ignore[attr-defined]

    def create_stream(
        self, table: str, options: Mapping[str, Any] | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        """Create a stream of features from the cache.

        Args:
            table: The table to export.
            options: Geoservices options restricting the export.

        Returns:
            Async iterator yielding one feature at a time. It is consumed
            once and cannot be restarted.

        Raises:
            UnsupportedCapabilityError: Immediately, if the backend has no
                export stream.
        """
        if not db_backend.has_capability(self.db, db_backend.StreamCapable):
            raise errors.UnsupportedCapabilityError(
                "Stream output is not supported by this cache"
            )
        query = self.decode_geoservices(options)
        return self.db.create_export_stream(table, query)  # type: ignore[attr-defined]
