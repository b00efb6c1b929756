"""Filter grammar shared by the bundled storage backends.

``where`` clauses are ``1=1`` or ``AND``-joined comparisons of a feature
property with a quoted string or a number, for example
``"state = 'CO' AND pop >= 1000"``. Geometry filters are envelopes given as
``"xmin,ymin,xmax,ymax"``, a 4-item sequence, or a mapping with
xmin/ymin/xmax/ymax keys. The in-memory backend evaluates them in Python;
the PostGIS backend turns them into parameterized SQL.
"""

from __future__ import annotations

import copy
import json
import re
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, NamedTuple

from geocache.core import errors

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from geocache.db import models as db_models

_TERM_RE = re.compile(
    r"\s*(?P<field>\w+)\s*(?P<op>=|!=|<>|>=|<=|>|<)\s*"
    r"(?P<value>'(?:[^']|'')*'|-?\d+(?:\.\d+)?)\s*"
)
_AND_RE = re.compile(r"(?<=\s)AND\s+", re.IGNORECASE)


class Comparison(NamedTuple):
    """``field op value`` term of a where clause."""

    field: str
    op: str
    value: str | int | float


def _parse_literal(raw: str) -> str | int | float:
    if raw.startswith("'"):
        return raw[1:-1].replace("''", "'")
    if "." in raw:
        return float(raw)
    return int(raw)


def parse_where(where: str | None) -> list[Comparison]:
    """Parse a where clause into comparisons that must all hold.

    An empty clause or ``1=1`` yields no comparisons. Terms are read one
    after the other, so ``AND`` inside a quoted string stays part of the
    string.

    Raises:
        InvalidQueryError: If a term is not a supported comparison.
    """
    if where is None or not where.strip() or where.replace(" ", "") == "1=1":
        return []
    comparisons = []
    position = 0
    while True:
        match = _TERM_RE.match(where, position)
        if match is None:
            raise errors.InvalidQueryError(
                f'Unsupported where clause "{where[position:].strip()}"'
            )
        comparisons.append(
            Comparison(
                match["field"], match["op"], _parse_literal(match["value"])
            )
        )
        position = match.end()
        if position == len(where):
            return comparisons
        separator = _AND_RE.match(where, position)
        if separator is None:
            raise errors.InvalidQueryError(
                f'Unsupported where clause "{where[position:].strip()}"'
            )
        position = separator.end()


def is_number(value: Any) -> bool:
    """True for JSON numbers; booleans are not numbers."""
    return isinstance(value, int | float) and not isinstance(value, bool)


def same_kind(actual: Any, expected: str | int | float) -> bool:
    """Whether a property value can be compared with a where literal.

    String literals only match string values and numeric literals only
    match numbers. Both backends apply this rule.
    """
    if isinstance(expected, str):
        return isinstance(actual, str)
    return is_number(actual)


def sort_key(value: Any) -> tuple[int, Any]:
    """Order mixed property values like PostgreSQL orders jsonb.

    Strings sort before numbers, numbers before booleans, booleans before
    arrays and arrays before objects.
    """
    if isinstance(value, str):
        return (0, value)
    if is_number(value):
        return (1, value)
    if isinstance(value, bool):
        return (2, value)
    if isinstance(value, list):
        return (3, json.dumps(value, sort_keys=True))
    return (4, json.dumps(value, sort_keys=True, default=str))


def parse_envelope(geometry: Any) -> db_models.BBox:
    """Parse an envelope geometry filter into (xmin, ymin, xmax, ymax).

    Raises:
        InvalidQueryError: If the filter is not an envelope.
    """
    try:
        if isinstance(geometry, str):
            values = [float(v) for v in geometry.split(",")]
        elif isinstance(geometry, Mapping):
            values = [
                float(geometry[k]) for k in ("xmin", "ymin", "xmax", "ymax")
            ]
        else:
            values = [float(v) for v in geometry]
    except (KeyError, TypeError, ValueError) as exc:
        raise errors.InvalidQueryError(
            f"Unsupported geometry filter {geometry!r}"
        ) from exc
    if len(values) != 4:
        raise errors.InvalidQueryError(
            f"Geometry envelope needs 4 values, got {len(values)}"
        )
    return (values[0], values[1], values[2], values[3])


def _positions(coordinates: Any) -> Iterator[tuple[float, float]]:
    if (
        isinstance(coordinates, Sequence)
        and len(coordinates) >= 2
        and all(isinstance(c, int | float) for c in coordinates[:2])
    ):
        yield float(coordinates[0]), float(coordinates[1])
        return
    if isinstance(coordinates, Sequence):
        for part in coordinates:
            yield from _positions(part)


def merge_boxes(boxes: Iterable[db_models.BBox]) -> db_models.BBox | None:
    """Return the box covering all ``boxes``, or None if there are none."""
    merged: db_models.BBox | None = None
    for box in boxes:
        if merged is None:
            merged = box
        else:
            merged = (
                min(merged[0], box[0]),
                min(merged[1], box[1]),
                max(merged[2], box[2]),
                max(merged[3], box[3]),
            )
    return merged


def geometry_bbox(geometry: Mapping[str, Any] | None) -> db_models.BBox | None:
    """Return the bounding box of a GeoJSON geometry, or None if empty."""
    if not geometry:
        return None
    if geometry.get("type") == "GeometryCollection":
        boxes = (geometry_bbox(g) for g in geometry.get("geometries") or [])
        return merge_boxes(b for b in boxes if b is not None)
    points = list(_positions(geometry.get("coordinates") or []))
    if not points:
        return None
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    return (min(xs), min(ys), max(xs), max(ys))


def intersects(a: db_models.BBox, b: db_models.BBox) -> bool:
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]


def project_feature(
    feature: Mapping[str, Any], out_fields: str | None
) -> dict[str, Any]:
    """Copy a feature, keeping only the properties named in ``out_fields``.

    ``None``, an empty string or ``*`` keep every property.
    """
    if not out_fields or out_fields.strip() == "*":
        return copy.deepcopy(dict(feature))
    wanted = [f.strip() for f in out_fields.split(",") if f.strip()]
    properties = feature.get("properties") or {}
    projected = copy.deepcopy(
        {k: v for k, v in feature.items() if k != "properties"}
    )
    projected["properties"] = {
        k: copy.deepcopy(properties[k]) for k in wanted if k in properties
    }
    return projected


def split_fields(fields: str | Sequence[str] | None) -> list[str]:
    """Split a comma separated field list; sequences are copied as is."""
    if fields is None:
        return []
    if isinstance(fields, str):
        return [f.strip() for f in fields.split(",") if f.strip()]
    return list(fields)
