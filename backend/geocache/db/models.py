"""Data models shared by the cache facade and its storage backends.

This module defines the value types that cross the boundary between the
cache and a backend: the composed storage key, the translated query, the
order-by clause and the service registry record.

Example:
    Composing keys for a provider dataset:
        >>> from geocache.db.models import compose_key
        >>> compose_key("obs", "k1")
        'obs:k1'
        >>> compose_key("obs", "k1", 2)
        'obs:k1:2'

    Rendering a translated query back to its mapping form:
        >>> from geocache.db.models import OrderBy, Query
        >>> Query(order_by=[OrderBy("pop", "DESC")]).to_dict()
        {'layer': 0, 'order_by': [{'pop': 'DESC'}]}
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any, Literal, NamedTuple

from geocache.core import errors

BBox = tuple[float, float, float, float]
Direction = Literal["ASC", "DESC"]
StatType = Literal["min", "max", "avg", "stddev", "count", "sum"]

STAT_TYPES: frozenset[str] = frozenset(
    ("min", "max", "avg", "stddev", "count", "sum")
)


@dataclasses.dataclass(frozen=True)
class StorageKey:
    """Identifier of a provider dataset inside a backend.

    Attributes:
        provider_type: Provider type, e.g. "obs" or "github".
        provider_key: Provider-defined dataset id.
        layer: Optional layer index appended as a third segment.
    """

    provider_type: str
    provider_key: str
    layer: int | None = None

    def __str__(self) -> str:
        base = f"{self.provider_type}:{self.provider_key}"
        if self.layer is None:
            return base
        return f"{base}:{self.layer}"


def compose_key(
    provider_type: str, provider_key: str, layer: int | None = None
) -> str:
    """Return the backend table name for a provider dataset."""
    return str(StorageKey(provider_type, provider_key, layer))


class OrderBy(NamedTuple):
    """A single ``field direction`` clause of an order-by list."""

    field: str
    direction: Direction = "ASC"

    def to_dict(self) -> dict[str, str]:
        return {self.field: self.direction}


@dataclasses.dataclass
class Query:
    """Backend-agnostic read query built from geoservices options.

    Built by ``geocache.services.query.decode_geoservices``. Backends read
    the typed fields; options the translator does not recognize are kept
    verbatim in ``extra``.

    Attributes:
        layer: Layer index inside the dataset (defaults to 0).
        where: Filter expression, interpreted by the backend.
        geometry: Spatial filter, interpreted by the backend.
        order_by_fields: Raw ``orderByFields`` string as received.
        order_by: Parsed order-by clauses, in input order.
        group_by: Grouping fields for statistics.
        out_fields: Comma separated property names to return.
        result_offset: Number of matching features to skip.
        result_record_count: Maximum number of features to return.
        extra: Unrecognized options, passed through untouched.
    """

    layer: int = 0
    where: str | None = None
    geometry: Any | None = None
    order_by_fields: str | None = None
    order_by: list[OrderBy] = dataclasses.field(default_factory=list)
    group_by: str | list[str] | None = None
    out_fields: str | None = None
    result_offset: int | None = None
    result_record_count: int | None = None
    extra: dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Render the query in its geoservices mapping form.

        Unset options are omitted, so an empty query renders as
        ``{"layer": 0}``. ``order_by`` is a list of single-key mappings.
        """
        result: dict[str, Any] = dict(self.extra)
        result["layer"] = self.layer
        optional = {
            "where": self.where,
            "geometry": self.geometry,
            "orderByFields": self.order_by_fields,
            "groupByFieldsForStatistics": self.group_by,
            "outFields": self.out_fields,
            "resultOffset": self.result_offset,
            "resultRecordCount": self.result_record_count,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        if self.order_by:
            result["order_by"] = [clause.to_dict() for clause in self.order_by]
        return result


@dataclasses.dataclass
class ServiceRecord:
    """A backend endpoint registered under a service type.

    Attributes:
        service_type: Registry namespace, e.g. "wms" or "agol".
        id: Identifier of the endpoint within its type.
        host: Host information for the endpoint.
    """

    service_type: str
    id: str
    host: str | None = None

    @classmethod
    def from_info(
        cls, service_type: str, info: Mapping[str, Any]
    ) -> ServiceRecord:
        """Build a record from a ``{"id": ..., "host": ...}`` mapping.

        Raises:
            InvalidQueryError: If ``info`` has no ``id``.
        """
        if info.get("id") is None:
            raise errors.InvalidQueryError(
                f'Service info for "{service_type}" needs an "id"'
            )
        host = info.get("host")
        return cls(
            service_type=service_type,
            id=str(info["id"]),
            host=str(host) if host is not None else None,
        )
