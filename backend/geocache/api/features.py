"""Feature, metadata and statistics endpoints backed by the cache.

This module exposes the ``Cache`` facade over HTTP: querying the features
of a provider dataset with geoservices parameters, removing a dataset
layer, reading and updating table metadata, counts, extents, field
statistics and a newline-delimited GeoJSON export.

Tables are full ``type:key:layer`` names, as composed by the cache.

Example:
    Query the first layer of a dataset ordered by population:
        >>> response = client.get(
        ...     "/api/cache/obs/k1/query",
        ...     params={"layer": 0, "orderByFields": "pop DESC"},
        ... )
        >>> collection = response.json()
        >>> # Returns: {"type": "FeatureCollection", "features": [...], ...}

    Count the features of a table matching a where clause:
        >>> response = client.get(
        ...     "/api/cache/tables/obs:k1:0/count",
        ...     params={"where": "pop > 1000"},
        ... )
        >>> # Returns: {"count": 12}
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import fastapi
from fastapi import responses

from geocache.core import config
from geocache.db import database
from geocache.services import cache as cache_service

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

router = fastapi.APIRouter(prefix="/api/cache", tags=["cache"])


def get_cache(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> cache_service.Cache:
    """Resolve the cache dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        Cache over the configured storage backend.
    """
    return cache_service.Cache(database.get_backend(settings))


def _options(**values: Any) -> dict[str, Any]:
    """Drop query parameters that were not sent."""
    return {k: v for k, v in values.items() if v is not None}


@router.get("/{provider_type}/{key}/query")
async def query_features(
    provider_type: str,
    key: str,
    layer: int = 0,
    where: str | None = None,
    geometry: str | None = None,
    order_by_fields: str | None = fastapi.Query(None, alias="orderByFields"),
    out_fields: str | None = fastapi.Query(None, alias="outFields"),
    result_offset: int | None = fastapi.Query(None, alias="resultOffset"),
    result_record_count: int | None = fastapi.Query(
        None, alias="resultRecordCount"
    ),
    cache: cache_service.Cache = fastapi.Depends(get_cache),  # noqa: B008
) -> Any:
    """Select features of a provider dataset.

    Args:
        provider_type: The provider type, e.g. "obs".
        key: Provider-defined dataset id.
        layer: Layer of the dataset (default 0).
        where: Filter expression, e.g. ``state = 'CO' AND pop >= 1000``.
        geometry: Envelope filter ``xmin,ymin,xmax,ymax``.
        order_by_fields: ``orderByFields`` string, e.g. ``name, pop DESC``.
        out_fields: Comma separated properties to return.
        result_offset: Number of matching features to skip.
        result_record_count: Maximum number of features to return.
        cache: Cache facade (injected via FastAPI Depends).

    Returns:
        The backend's FeatureCollection.
    """
    options = _options(
        layer=layer,
        where=where,
        geometry=geometry,
        orderByFields=order_by_fields,
        outFields=out_fields,
        resultOffset=result_offset,
        resultRecordCount=result_record_count,
    )
    return await cache.get(provider_type, key, options)


@router.delete("/{provider_type}/{key}")
async def remove_dataset(
    provider_type: str,
    key: str,
    layer: int = 0,
    cache: cache_service.Cache = fastapi.Depends(get_cache),  # noqa: B008
) -> dict[str, bool]:
    """Remove one layer of a provider dataset."""
    removed = await cache.remove(provider_type, key, {"layer": layer})
    return {"removed": removed}


@router.get("/tables/{table}/info")
async def get_table_info(
    table: str,
    cache: cache_service.Cache = fastapi.Depends(get_cache),  # noqa: B008
) -> Any:
    """Return the metadata stored for a table."""
    return await cache.get_info(table)


@router.put("/tables/{table}/info")
async def update_table_info(
    table: str,
    info: dict[str, Any] = fastapi.Body(...),  # noqa: B008
    cache: cache_service.Cache = fastapi.Depends(get_cache),  # noqa: B008
) -> Any:
    """Merge ``info`` into the metadata stored for a table."""
    await cache.update_info(table, info)
    return await cache.get_info(table)


@router.get("/tables/{table}/count")
async def count_features(
    table: str,
    where: str | None = None,
    geometry: str | None = None,
    cache: cache_service.Cache = fastapi.Depends(get_cache),  # noqa: B008
) -> dict[str, int]:
    """Count the features of a table matching where/geometry filters."""
    count = await cache.get_count(table, _options(where=where, geometry=geometry))
    return {"count": count}


@router.get("/tables/{table}/extent")
async def table_extent(
    table: str,
    where: str | None = None,
    geometry: str | None = None,
    cache: cache_service.Cache = fastapi.Depends(get_cache),  # noqa: B008
) -> dict[str, list[float] | None]:
    """Return the extent of a table as [xmin, ymin, xmax, ymax].

    The extent is None when the table has no geometries or the backend
    cannot compute extents.
    """
    extent = await cache.get_extent(
        table, _options(where=where, geometry=geometry)
    )
    return {"extent": list(extent) if extent is not None else None}


@router.get("/tables/{table}/stats/{field}")
async def field_statistic(
    table: str,
    field: str,
    stat_type: str = fastapi.Query("count", alias="type"),
    out_name: str | None = fastapi.Query(None, alias="outName"),
    where: str | None = None,
    group_by: str | None = fastapi.Query(None, alias="groupByFieldsForStatistics"),
    cache: cache_service.Cache = fastapi.Depends(get_cache),  # noqa: B008
) -> Any:
    """Compute a statistic over a feature property.

    Args:
        table: The table name.
        field: Property to compute the statistic from.
        stat_type: One of min, max, avg, stddev, count or sum.
        out_name: Output field name (defaults to ``{type}_{field}``).
        where: Filter expression.
        group_by: Comma separated grouping properties.
        cache: Cache facade (injected via FastAPI Depends).

    Returns:
        One row per group, each mapping group values and ``out_name``.
    """
    return await cache.get_stat(
        table,
        field,
        out_name or f"{stat_type}_{field}",
        stat_type,
        _options(where=where, groupByFieldsForStatistics=group_by),
    )


@router.get("/tables/{table}/export")
async def export_features(
    table: str,
    where: str | None = None,
    geometry: str | None = None,
    out_fields: str | None = fastapi.Query(None, alias="outFields"),
    cache: cache_service.Cache = fastapi.Depends(get_cache),  # noqa: B008
) -> responses.StreamingResponse:
    """Stream the features of a table as newline-delimited GeoJSON.

    The first feature is read before the response starts, so errors
    raised when the stream opens still map to an error status.

    Raises:
        UnsupportedCapabilityError: If the backend has no export stream;
            mapped to a 501 response.
        CacheMissError: If the table is unknown; mapped to a 404 response.
    """
    stream = cache.create_stream(
        table, _options(where=where, geometry=geometry, outFields=out_fields)
    )
    try:
        first = await anext(stream)
    except StopAsyncIteration:
        first = None

    async def lines(features: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
        if first is None:
            return
        yield json.dumps(first) + "\n"
        async for feature in features:
            yield json.dumps(feature) + "\n"

    return responses.StreamingResponse(
        lines(stream),
        media_type="application/geo+json-seq",
    )
