"""Tests for the Cache facade.

This module validates geocache.services.cache.Cache against fake backends:
    - Key composition for insert, select and removal,
    - Translation of options before select, count, stat and extent,
    - Pass-through of backend results and exceptions,
    - Degradation when optional capabilities are missing: extent returns
      None, add_indexes fails when awaited, create_stream fails at call
      time,
    - The service registry contract,
    - An insert/get round trip against the in-memory backend.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import Any

import pytest

from geocache.core import errors
from geocache.db import memory
from geocache.db import models as db_models
from geocache.services import cache as cache_service


class RecordingBackend:
    """Backend with only the mandatory operations, recording every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.result: Any = None

    async def insert(self, table: str, data: Any, layer_id: int) -> Any:
        self.calls.append(("insert", table, data, layer_id))
        return self.result

    async def insert_partial(self, table: str, data: Any, layer_id: int) -> Any:
        self.calls.append(("insert_partial", table, data, layer_id))
        return self.result

    async def remove(self, table: str) -> None:
        self.calls.append(("remove", table))

    async def select(self, table: str, query: db_models.Query) -> Any:
        self.calls.append(("select", table, query))
        return self.result

    async def get_info(self, table: str) -> Any:
        self.calls.append(("get_info", table))
        return self.result

    async def update_info(self, table: str, info: Mapping[str, Any]) -> Any:
        self.calls.append(("update_info", table, info))
        return self.result

    async def get_count(self, table: str, query: db_models.Query) -> int:
        self.calls.append(("get_count", table, query))
        return 7

    async def get_stat(
        self,
        table: str,
        field: str,
        out_name: str,
        stat_type: str,
        query: db_models.Query,
    ) -> Any:
        self.calls.append(("get_stat", table, field, out_name, stat_type, query))
        return self.result

    async def service_count(self, service_type: str) -> int:
        self.calls.append(("service_count", service_type))
        return 0

    async def service_get(
        self, service_type: str, service_id: str | None = None
    ) -> Any:
        self.calls.append(("service_get", service_type, service_id))
        return self.result

    async def service_register(
        self, service_type: str, info: Mapping[str, Any]
    ) -> Any:
        self.calls.append(("service_register", service_type, info))
        return self.result

    async def service_remove(self, service_type: str, service_id: str) -> Any:
        self.calls.append(("service_remove", service_type, service_id))
        return self.result


class FailingBackend(RecordingBackend):
    """Backend whose reads fail with its own exception type."""

    class Boom(Exception):
        pass

    async def select(self, table: str, query: db_models.Query) -> Any:
        raise self.Boom(f"cannot read {table}")

    async def remove(self, table: str) -> None:
        raise self.Boom(f"cannot remove {table}")


class CapableBackend(RecordingBackend):
    """Backend adding every optional capability."""

    async def get_extent(
        self, table: str, query: db_models.Query
    ) -> db_models.BBox | None:
        self.calls.append(("get_extent", table, query))
        return (0.0, 0.0, 1.0, 1.0)

    async def add_indexes(self, table: str, options: Mapping[str, Any]) -> str:
        self.calls.append(("add_indexes", table, options))
        return "indexed"

    async def create_export_stream(
        self, table: str, query: db_models.Query
    ) -> AsyncIterator[dict[str, Any]]:
        self.calls.append(("create_export_stream", table, query))
        for i in range(3):
            yield {"type": "Feature", "properties": {"i": i}, "geometry": None}


FEATURES = {
    "type": "FeatureCollection",
    "name": "observations",
    "features": [
        {
            "type": "Feature",
            "properties": {"name": "a", "pop": 10},
            "geometry": {"type": "Point", "coordinates": [1.0, 2.0]},
        },
        {
            "type": "Feature",
            "properties": {"name": "b", "pop": 20},
            "geometry": {"type": "Point", "coordinates": [3.0, 4.0]},
        },
    ],
}


def test_cache_rejects_incomplete_backend() -> None:
    """Test that a backend missing mandatory operations is refused."""

    class NotABackend:
        async def insert(self, table: str, data: Any, layer_id: int) -> None:
            return None

    with pytest.raises(errors.ConfigurationError):
        cache_service.Cache(NotABackend())  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_insert_uses_type_key_and_explicit_layer() -> None:
    """Test that insert composes type:key and passes the layer apart."""
    backend = RecordingBackend()
    backend.result = "stored"
    cache = cache_service.Cache(backend)
    result = await cache.insert("obs", "k1", FEATURES, 2)
    assert result == "stored"
    assert backend.calls == [("insert", "obs:k1", FEATURES, 2)]


@pytest.mark.asyncio
async def test_insert_partial_uses_type_key() -> None:
    """Test that insert_partial delegates to the partial insert."""
    backend = RecordingBackend()
    cache = cache_service.Cache(backend)
    await cache.insert_partial("obs", "k1", FEATURES, 0)
    assert backend.calls == [("insert_partial", "obs:k1", FEATURES, 0)]


@pytest.mark.asyncio
async def test_remove_reports_true_without_backend_result() -> None:
    """Test that remove returns True when the backend returns nothing."""
    backend = RecordingBackend()
    cache = cache_service.Cache(backend)
    assert await cache.remove("obs", "k1", {}) is True
    assert backend.calls == [("remove", "obs:k1:0")]


@pytest.mark.asyncio
async def test_remove_appends_requested_layer() -> None:
    """Test that remove targets the layer given in options."""
    backend = RecordingBackend()
    cache = cache_service.Cache(backend)
    await cache.remove("obs", "k1", {"layer": 4})
    await cache.remove("obs", "k2")
    assert backend.calls == [("remove", "obs:k1:4"), ("remove", "obs:k2:0")]


@pytest.mark.asyncio
async def test_remove_surfaces_backend_error() -> None:
    """Test that a failing removal raises the backend's own exception."""
    cache = cache_service.Cache(FailingBackend())
    with pytest.raises(FailingBackend.Boom, match="obs:k1:0"):
        await cache.remove("obs", "k1")


@pytest.mark.asyncio
async def test_get_translates_options_and_keeps_layer_out_of_key() -> None:
    """Test that get selects type:key with a translated query."""
    backend = RecordingBackend()
    backend.result = {"type": "FeatureCollection", "features": []}
    cache = cache_service.Cache(backend)
    options = {"layer": 1, "orderByFields": "name, pop DESC"}
    result = await cache.get("obs", "k1", options)
    assert result == backend.result
    _, table, query = backend.calls[0]
    assert table == "obs:k1"
    assert query.layer == 1
    assert query.to_dict()["order_by"] == [{"name": "ASC"}, {"pop": "DESC"}]
    assert options == {"layer": 1, "orderByFields": "name, pop DESC"}


@pytest.mark.asyncio
async def test_get_surfaces_backend_error_unchanged() -> None:
    """Test that backend exceptions are not wrapped."""
    cache = cache_service.Cache(FailingBackend())
    with pytest.raises(FailingBackend.Boom, match="obs:k1"):
        await cache.get("obs", "k1", {})


@pytest.mark.asyncio
async def test_get_rejects_invalid_order_before_delegating() -> None:
    """Test that malformed options never reach the backend."""
    backend = RecordingBackend()
    cache = cache_service.Cache(backend)
    with pytest.raises(errors.InvalidQueryError):
        await cache.get("obs", "k1", {"orderByFields": "pop sideways"})
    assert backend.calls == []


@pytest.mark.asyncio
async def test_metadata_passthrough() -> None:
    """Test that info operations reach the backend unchanged."""
    backend = RecordingBackend()
    backend.result = {"name": "observations"}
    cache = cache_service.Cache(backend)
    assert await cache.get_info("obs:k1:0") == {"name": "observations"}
    await cache.update_info("obs:k1:0", {"status": "processing"})
    assert backend.calls == [
        ("get_info", "obs:k1:0"),
        ("update_info", "obs:k1:0", {"status": "processing"}),
    ]


@pytest.mark.asyncio
async def test_count_and_stat_translate_options() -> None:
    """Test that count and stat receive translated queries."""
    backend = RecordingBackend()
    backend.result = [{"max_pop": 20}]
    cache = cache_service.Cache(backend)
    assert await cache.get_count("obs:k1:0", {"where": "pop > 1"}) == 7
    stat = await cache.get_stat(
        "obs:k1:0", "pop", "max_pop", "max", {"groupByFieldsForStatistics": "a"}
    )
    assert stat == [{"max_pop": 20}]
    count_call, stat_call = backend.calls
    assert count_call[2].where == "pop > 1"
    assert stat_call[:5] == ("get_stat", "obs:k1:0", "pop", "max_pop", "max")
    assert stat_call[5].group_by == "a"


@pytest.mark.asyncio
async def test_get_extent_without_capability_returns_none() -> None:
    """Test that a missing extent capability degrades to None."""
    backend = RecordingBackend()
    cache = cache_service.Cache(backend)
    assert await cache.get_extent("obs:k1:0", {}) is None
    assert backend.calls == []


@pytest.mark.asyncio
async def test_get_extent_with_capability() -> None:
    """Test that extents are delegated when supported."""
    cache = cache_service.Cache(CapableBackend())
    assert await cache.get_extent("obs:k1:0") == (0.0, 0.0, 1.0, 1.0)


@pytest.mark.asyncio
async def test_add_indexes_without_capability_fails_when_awaited() -> None:
    """Test that missing index support is reported, not silently skipped."""
    cache = cache_service.Cache(RecordingBackend())
    pending = cache.add_indexes("obs:k1:0", {"fields": ["name"]})
    with pytest.raises(
        errors.UnsupportedCapabilityError, match="does not support indexes"
    ):
        await pending


@pytest.mark.asyncio
async def test_add_indexes_with_capability() -> None:
    """Test that index creation is delegated when supported."""
    backend = CapableBackend()
    cache = cache_service.Cache(backend)
    assert await cache.add_indexes("obs:k1:0", {"fields": ["name"]}) == "indexed"
    assert backend.calls == [("add_indexes", "obs:k1:0", {"fields": ["name"]})]


def test_create_stream_without_capability_raises_immediately() -> None:
    """Test that a missing export stream fails at call time."""
    cache = cache_service.Cache(RecordingBackend())
    with pytest.raises(
        errors.UnsupportedCapabilityError, match="Stream output is not supported"
    ):
        cache.create_stream("obs:k1:0", {})


@pytest.mark.asyncio
async def test_create_stream_yields_single_features_once() -> None:
    """Test that the stream yields features lazily and only once."""
    backend = CapableBackend()
    cache = cache_service.Cache(backend)
    stream = cache.create_stream("obs:k1:0", {"where": "1=1"})
    assert backend.calls == []
    features = [feature async for feature in stream]
    assert [f["properties"]["i"] for f in features] == [0, 1, 2]
    assert [feature async for feature in stream] == []
    assert backend.calls[0][2].where == "1=1"



def test_create_stream_unknown_table_raises_at_call_time() -> None:
    """Test that the in-memory stream checks the table before iteration."""
    cache = cache_service.Cache(memory.InMemoryBackend())
    with pytest.raises(errors.CacheMissError, match="obs:nope:0"):
        cache.create_stream("obs:nope:0", {})

@pytest.mark.asyncio
async def test_capability_checked_on_every_call() -> None:
    """Test that capabilities are checked on every call, not cached."""
    backend = RecordingBackend()
    cache = cache_service.Cache(backend)
    assert await cache.get_extent("t") is None

    async def get_extent(table: str, query: db_models.Query) -> db_models.BBox:
        return (1.0, 1.0, 2.0, 2.0)

    backend.get_extent = get_extent  # type: ignore[attr-defined]
    assert await cache.get_extent("t") == (1.0, 1.0, 2.0, 2.0)


@pytest.mark.asyncio
async def test_service_registry_passthrough() -> None:
    """Test that service operations are routed to the backend."""
    backend = RecordingBackend()
    cache = cache_service.Cache(backend)
    await cache.service_register("wms", {"id": "a", "host": "h"})
    await cache.service_get("wms")
    await cache.service_get("wms", "a")
    await cache.service_count("wms")
    await cache.service_remove("wms", "a")
    assert backend.calls == [
        ("service_register", "wms", {"id": "a", "host": "h"}),
        ("service_get", "wms", None),
        ("service_get", "wms", "a"),
        ("service_count", "wms"),
        ("service_remove", "wms", "a"),
    ]


@pytest.mark.asyncio
async def test_service_get_returns_all_or_one() -> None:
    """Test service_get with and without an id on the in-memory backend."""
    cache = cache_service.Cache(memory.InMemoryBackend())
    await cache.service_register("wms", {"id": "a", "host": "h1"})
    await cache.service_register("wms", {"id": "b", "host": "h2"})
    await cache.service_register("agol", {"id": "c", "host": "h3"})

    records = await cache.service_get("wms")
    assert {r.id for r in records} == {"a", "b"}
    assert await cache.service_get("wms", "b") == db_models.ServiceRecord(
        "wms", "b", "h2"
    )
    assert await cache.service_get("wms", "zzz") is None
    assert await cache.service_count("wms") == 2


@pytest.mark.asyncio
async def test_insert_then_get_round_trip() -> None:
    """Test that features inserted through the cache can be read back."""
    cache = cache_service.Cache(memory.InMemoryBackend())
    await cache.insert("obs", "k1", FEATURES, 0)
    collection = await cache.get("obs", "k1", {"layer": 0})
    assert collection["type"] == "FeatureCollection"
    assert collection["name"] == "observations"
    assert collection["features"] == FEATURES["features"]

    await cache.insert_partial(
        "obs",
        "k1",
        {"features": [{"type": "Feature", "properties": {"name": "c"}}]},
        0,
    )
    assert await cache.get_count("obs:k1:0") == 3

    assert await cache.remove("obs", "k1", {"layer": 0}) is True
    with pytest.raises(errors.CacheMissError):
        await cache.get("obs", "k1", {"layer": 0})
