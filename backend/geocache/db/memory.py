"""In-memory storage backend for tests and local development.

Keeps features, table metadata, requested indexes and registered services
in dictionaries. Data is lost when the process exits. Implements every
optional capability (extent, indexes, export stream), so it doubles as the
reference implementation of the backend contract.

Tables written by ``insert`` are stored per layer under ``table:layer``.
``select`` receives the ``type:key`` table and reads the layer from the
query; every other table operation receives the full ``type:key:layer``
name. Where and geometry filters follow ``geocache.db.filters``.
"""

from __future__ import annotations

import copy
import logging
import operator
import statistics
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from geocache.core import errors
from geocache.db import filters
from geocache.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)

Feature = dict[str, Any]

_COMPARE: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "!=": operator.ne,
    "<>": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


def _features_of(data: Any) -> list[Feature]:
    """Extract the list of features from a GeoJSON payload."""
    if isinstance(data, Mapping):
        if data.get("type") == "Feature":
            return [dict(data)]
        return [dict(f) for f in data.get("features") or []]
    if isinstance(data, Sequence) and not isinstance(data, str):
        return [dict(f) for f in data]
    raise errors.InvalidQueryError("Expected GeoJSON features to insert")


def _info_of(data: Any) -> dict[str, Any]:
    if not isinstance(data, Mapping):
        return {}
    info = dict(data.get("info") or {})
    if data.get("name") is not None:
        info.setdefault("name", data["name"])
    return info


def _matches(
    feature: Feature, comparisons: list[filters.Comparison]
) -> bool:
    properties = feature.get("properties") or {}
    for field, op, expected in comparisons:
        actual = properties.get(field)
        if not filters.same_kind(actual, expected):
            return False
        if not _COMPARE[op](actual, expected):
            return False
    return True


def _property(feature: Feature, field: str) -> Any:
    return (feature.get("properties") or {}).get(field)


def _order(features: list[Feature], clause: db_models.OrderBy) -> list[Feature]:
    """Stable sort on one property; features lacking it go last."""
    present = [f for f in features if _property(f, clause.field) is not None]
    missing = [f for f in features if _property(f, clause.field) is None]
    present.sort(
        key=lambda f: filters.sort_key(_property(f, clause.field)),
        reverse=clause.direction == "DESC",
    )
    return present + missing


def _compute_stat(stat_type: str, values: list[Any]) -> Any:
    if stat_type == "count":
        return len(values)
    numbers = [v for v in values if filters.is_number(v)]
    if not numbers:
        return None
    if stat_type == "min":
        return min(numbers)
    if stat_type == "max":
        return max(numbers)
    if stat_type == "sum":
        return sum(numbers)
    if stat_type == "avg":
        return statistics.fmean(numbers)
    # stddev, sample standard deviation as in SQL
    return statistics.stdev(numbers) if len(numbers) > 1 else None


class InMemoryBackend:
    """Dictionary-backed implementation of every backend operation."""

    def __init__(self) -> None:
        """Initialize empty feature, metadata, index and service stores."""
        self._features: dict[str, list[Feature]] = {}
        self._info: dict[str, dict[str, Any]] = {}
        self._indexes: dict[str, list[dict[str, Any]]] = {}
        self._services: dict[str, dict[str, db_models.ServiceRecord]] = {}

    def _table(self, table: str) -> list[Feature]:
        try:
            return self._features[table]
        except KeyError:
            raise errors.CacheMissError(f"Resource not found: {table}") from None

    def _filter(self, table: str, query: db_models.Query) -> list[Feature]:
        comparisons = filters.parse_where(query.where)
        envelope = (
            filters.parse_envelope(query.geometry)
            if query.geometry is not None
            else None
        )
        matched = []
        for feature in self._table(table):
            if not _matches(feature, comparisons):
                continue
            if envelope is not None:
                box = filters.geometry_bbox(feature.get("geometry"))
                if box is None or not filters.intersects(box, envelope):
                    continue
            matched.append(feature)
        return matched

    async def insert(
        self, table: str, data: Mapping[str, Any], layer_id: int
    ) -> bool:
        """Store a dataset layer, replacing any previous content."""
        name = f"{table}:{layer_id}"
        self._features[name] = _features_of(data)
        self._info[name] = _info_of(data)
        logger.debug("stored %d features in %s", len(self._features[name]), name)
        return True

    async def insert_partial(
        self, table: str, data: Mapping[str, Any], layer_id: int
    ) -> bool:
        """Append features to an existing dataset layer."""
        name = f"{table}:{layer_id}"
        self._table(name).extend(_features_of(data))
        return True

    async def remove(self, table: str) -> None:
        """Drop a dataset layer; unknown tables are ignored."""
        self._features.pop(table, None)
        self._info.pop(table, None)
        self._indexes.pop(table, None)

    async def select(
        self, table: str, query: db_models.Query
    ) -> dict[str, Any]:
        """Return the matching features of ``table`` as a FeatureCollection."""
        name = f"{table}:{query.layer}"
        features = self._filter(name, query)
        for clause in reversed(query.order_by):
            features = _order(features, clause)
        start = query.result_offset or 0
        stop = (
            start + query.result_record_count
            if query.result_record_count is not None
            else None
        )
        info = copy.deepcopy(self._info.get(name, {}))
        return {
            "type": "FeatureCollection",
            "name": info.get("name"),
            "info": info,
            "features": [
                filters.project_feature(f, query.out_fields)
                for f in features[start:stop]
            ],
        }

    async def get_info(self, table: str) -> dict[str, Any]:
        self._table(table)
        return copy.deepcopy(self._info.get(table, {}))

    async def update_info(self, table: str, info: Mapping[str, Any]) -> None:
        self._table(table)
        self._info.setdefault(table, {}).update(info)

    async def get_count(self, table: str, query: db_models.Query) -> int:
        return len(self._filter(table, query))

    async def get_stat(
        self,
        table: str,
        field: str,
        out_name: str,
        stat_type: str,
        query: db_models.Query,
    ) -> list[dict[str, Any]]:
        """Compute a statistic, one row per group when grouping is asked."""
        if stat_type not in db_models.STAT_TYPES:
            raise errors.InvalidQueryError(f'Unknown statistic type "{stat_type}"')
        group_fields = filters.split_fields(query.group_by)

        groups: dict[tuple[Any, ...], list[Any]] = {}
        for feature in self._filter(table, query):
            properties = feature.get("properties") or {}
            group = tuple(properties.get(f) for f in group_fields)
            bucket = groups.setdefault(group, [])
            value = properties.get(field)
            if value is not None:
                bucket.append(value)
        if not groups and not group_fields:
            groups[()] = []

        rows = []
        for group, values in groups.items():
            row: dict[str, Any] = dict(zip(group_fields, group, strict=True))
            row[out_name] = _compute_stat(stat_type, values)
            rows.append(row)
        return rows

    async def get_extent(
        self, table: str, query: db_models.Query
    ) -> db_models.BBox | None:
        boxes = (
            filters.geometry_bbox(f.get("geometry"))
            for f in self._filter(table, query)
        )
        return filters.merge_boxes(b for b in boxes if b is not None)

    async def add_indexes(self, table: str, options: Mapping[str, Any]) -> None:
        """Record the requested indexes; lookups are not accelerated."""
        self._table(table)
        self._indexes.setdefault(table, []).append(dict(options))

    def indexes(self, table: str) -> list[dict[str, Any]]:
        """Return the index requests recorded for a table."""
        return list(self._indexes.get(table, []))

    def create_export_stream(
        self, table: str, query: db_models.Query
    ) -> AsyncIterator[Feature]:
        """Return a stream of the matching features of ``table``.

        The table and the filters are checked before the stream is
        returned, so unknown tables and bad filters raise right away.
        """
        features = self._filter(table, query)

        async def stream() -> AsyncIterator[Feature]:
            for feature in features:
                yield filters.project_feature(feature, query.out_fields)

        return stream()

    async def service_count(self, service_type: str) -> int:
        return len(self._services.get(service_type, {}))

    async def service_get(
        self, service_type: str, service_id: str | None = None
    ) -> list[db_models.ServiceRecord] | db_models.ServiceRecord | None:
        """Return every service of a type, or the one matching ``service_id``."""
        services = self._services.get(service_type, {})
        if service_id is None:
            return list(services.values())
        return services.get(service_id)

    async def service_register(
        self, service_type: str, info: Mapping[str, Any]
    ) -> db_models.ServiceRecord:
        record = db_models.ServiceRecord.from_info(service_type, info)
        self._services.setdefault(service_type, {})[record.id] = record
        logger.info("registered %s service %s", service_type, record.id)
        return record

    async def service_remove(self, service_type: str, service_id: str) -> None:
        services = self._services.get(service_type, {})
        if services.pop(service_id, None) is None:
            raise errors.CacheMissError(
                f"Service not found: {service_type}/{service_id}"
            )
