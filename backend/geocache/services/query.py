"""Translation of geoservices query options into backend queries.

Providers and controllers describe reads with the geoservices option
vocabulary (``layer``, ``where``, ``geometry``, ``orderByFields``, ...).
This module turns such a mapping into a ``Query`` that every backend can
read the same way. The caller's mapping is never modified.

Example:
    Translate an order-by string:
        >>> from geocache.services.query import decode_geoservices
        >>> query = decode_geoservices({"orderByFields": "name, pop DESC"})
        >>> query.to_dict()["order_by"]
        [{'name': 'ASC'}, {'pop': 'DESC'}]
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from geocache.core import errors
from geocache.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Mapping

DIRECTIONS: frozenset[str] = frozenset(("ASC", "DESC"))

# option name -> accepted spellings, first match wins
_ALIASES: dict[str, tuple[str, ...]] = {
    "layer": ("layer",),
    "where": ("where",),
    "geometry": ("geometry",),
    "order_by_fields": ("orderByFields", "order_by_fields"),
    "group_by": ("groupByFieldsForStatistics", "groupBy", "group_by"),
    "out_fields": ("outFields", "out_fields"),
    "result_offset": ("resultOffset", "result_offset"),
    "result_record_count": ("resultRecordCount", "result_record_count"),
}


def parse_order_by_fields(order_by_fields: str) -> list[db_models.OrderBy]:
    """Convert a geoservices ``orderByFields`` string to order-by clauses.

    Segments are separated by commas and hold a field name optionally
    followed by ``ASC`` or ``DESC`` (case-insensitive, ``ASC`` when
    omitted). Input order is preserved and repeated fields are kept.
    Empty segments, such as the one after a trailing comma, are skipped.

    Args:
        order_by_fields: String like ``"name, pop DESC, area"``.

    Returns:
        List of OrderBy clauses in input order.

    Raises:
        InvalidQueryError: If a segment has an unknown direction or more
            than two tokens.
    """
    clauses: list[db_models.OrderBy] = []
    for segment in order_by_fields.split(","):
        tokens = segment.split()
        if not tokens:
            continue
        if len(tokens) > 2:
            raise errors.InvalidQueryError(
                f'Invalid orderByFields segment "{segment.strip()}"'
            )
        direction = tokens[1].upper() if len(tokens) == 2 else "ASC"
        if direction not in DIRECTIONS:
            raise errors.InvalidQueryError(
                f'Invalid sort direction "{tokens[1]}" for field "{tokens[0]}"'
            )
        clauses.append(
            db_models.OrderBy(tokens[0], cast(db_models.Direction, direction))
        )
    return clauses


def _to_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise errors.InvalidQueryError(
            f'Option "{name}" must be an integer, got {value!r}'
        ) from exc


def _pop_option(options: dict[str, Any], name: str) -> Any:
    value = None
    for alias in _ALIASES[name]:
        if alias in options:
            found = options.pop(alias)
            if value is None:
                value = found
    return value


def decode_geoservices(
    options: Mapping[str, Any] | None = None,
) -> db_models.Query:
    """Translate geoservices query options into a backend query.

    The input is shallow-copied, so the same options mapping can be reused
    by the caller after the call. ``layer`` defaults to 0 when missing or
    falsy; ``order_by`` is only populated when ``orderByFields`` is a
    non-empty string. Options with no dedicated field are kept in
    ``Query.extra``.

    Args:
        options: Geoservices options; may be None or empty.

    Returns:
        Query ready to hand to a storage backend.

    Raises:
        InvalidQueryError: If ``orderByFields`` is malformed or a numeric
            option is not an integer.

    Example:
        >>> decode_geoservices({}).to_dict()
        {'layer': 0}
        >>> decode_geoservices({"layer": "2", "where": "pop > 10"}).layer
        2
    """
    remaining = dict(options or {})

    layer = _pop_option(remaining, "layer")
    order_by_fields = _pop_option(remaining, "order_by_fields")
    result_offset = _pop_option(remaining, "result_offset")
    result_record_count = _pop_option(remaining, "result_record_count")

    order_by: list[db_models.OrderBy] = []
    if isinstance(order_by_fields, str) and order_by_fields:
        order_by = parse_order_by_fields(order_by_fields)

    return db_models.Query(
        layer=_to_int("layer", layer) if layer else 0,
        where=_pop_option(remaining, "where"),
        geometry=_pop_option(remaining, "geometry"),
        order_by_fields=order_by_fields,
        order_by=order_by,
        group_by=_pop_option(remaining, "group_by"),
        out_fields=_pop_option(remaining, "out_fields"),
        result_offset=(
            _to_int("resultOffset", result_offset)
            if result_offset is not None
            else None
        ),
        result_record_count=(
            _to_int("resultRecordCount", result_record_count)
            if result_record_count is not None
            else None
        ),
        extra=remaining,
    )
