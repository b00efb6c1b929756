"""Tests for the value types exchanged between the cache and backends.

Covers storage key composition, rendering of translated queries to their
mapping form, order-by clauses and service records built from
registration info.
"""

from __future__ import annotations

import pytest

from geocache.core import errors
from geocache.db import models as db_models


@pytest.mark.parametrize(
    ("provider_type", "key", "layer", "expected"),
    [
        ("obs", "k1", None, "obs:k1"),
        ("obs", "k1", 0, "obs:k1:0"),
        ("obs", "k1", 3, "obs:k1:3"),
        ("github", "koop/issues", None, "github:koop/issues"),
    ],
)
def test_compose_key(
    provider_type: str, key: str, layer: int | None, expected: str
) -> None:
    """Test that keys are type:key, with the layer appended when given."""
    assert db_models.compose_key(provider_type, key, layer) == expected


def test_storage_key_str() -> None:
    """Test that StorageKey renders the same string as compose_key."""
    key = db_models.StorageKey("obs", "k1", 2)
    assert str(key) == "obs:k1:2"
    assert key.layer == 2


def test_empty_query_to_dict() -> None:
    """Test that an empty query renders only the layer."""
    assert db_models.Query().to_dict() == {"layer": 0}


def test_query_to_dict_with_order_by() -> None:
    """Test that order_by renders as single-key mappings in order."""
    query = db_models.Query(
        layer=1,
        where="pop > 10",
        order_by_fields="name, pop DESC",
        order_by=[db_models.OrderBy("name"), db_models.OrderBy("pop", "DESC")],
        extra={"f": "json"},
    )
    assert query.to_dict() == {
        "f": "json",
        "layer": 1,
        "where": "pop > 10",
        "orderByFields": "name, pop DESC",
        "order_by": [{"name": "ASC"}, {"pop": "DESC"}],
    }


def test_order_by_defaults_to_ascending() -> None:
    """Test that an OrderBy without direction is ascending."""
    assert db_models.OrderBy("name").to_dict() == {"name": "ASC"}


def test_service_record_from_info() -> None:
    """Test building a service record from registration info."""
    record = db_models.ServiceRecord.from_info(
        "agol", {"id": 7, "host": "https://example.com"}
    )
    assert record == db_models.ServiceRecord(
        service_type="agol", id="7", host="https://example.com"
    )


def test_service_record_from_info_without_host() -> None:
    """Test that host is optional in registration info."""
    record = db_models.ServiceRecord.from_info("wms", {"id": "a"})
    assert record.host is None


def test_service_record_from_info_requires_id() -> None:
    """Test that registration info must carry an id."""
    with pytest.raises(errors.InvalidQueryError, match="wms"):
        db_models.ServiceRecord.from_info("wms", {"host": "x"})
    with pytest.raises(errors.InvalidQueryError):
        db_models.ServiceRecord.from_info("wms", {"id": None, "host": "x"})
