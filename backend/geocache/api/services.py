"""Service registry endpoints.

Backends keep a registry of service endpoints grouped by service type
(for example every ArcGIS Online host a provider talks to). These
endpoints list, count, fetch, register and remove registry records.

Example:
    Register a host and list the hosts of its type:
        >>> client.post("/api/services/agol", json={"id": "a1", "host": "x"})
        >>> client.get("/api/services/agol").json()
        >>> # Returns: [{"service_type": "agol", "id": "a1", "host": "x"}]
"""

from __future__ import annotations

import dataclasses
from typing import Any

import fastapi
import pydantic

from geocache.api import features
from geocache.services import cache as cache_service

router = fastapi.APIRouter(prefix="/api/services", tags=["services"])


class ServiceInfo(pydantic.BaseModel):
    """Request body for registering a service."""

    id: str
    host: str | None = None


def _as_dict(record: Any) -> dict[str, Any]:
    if dataclasses.is_dataclass(record) and not isinstance(record, type):
        return dataclasses.asdict(record)
    return dict(record)


@router.get("/{service_type}")
async def list_services(
    service_type: str,
    cache: cache_service.Cache = fastapi.Depends(features.get_cache),  # noqa: B008
) -> list[dict[str, Any]]:
    """List every service registered for a type."""
    records = await cache.service_get(service_type)
    return [_as_dict(record) for record in records or []]


@router.get("/{service_type}/count")
async def count_services(
    service_type: str,
    cache: cache_service.Cache = fastapi.Depends(features.get_cache),  # noqa: B008
) -> dict[str, int]:
    """Count the services registered for a type."""
    return {"count": await cache.service_count(service_type)}


@router.get("/{service_type}/{service_id}")
async def get_service(
    service_type: str,
    service_id: str,
    cache: cache_service.Cache = fastapi.Depends(features.get_cache),  # noqa: B008
) -> dict[str, Any]:
    """Get a registered service.

    Raises:
        HTTPException: If the service is not registered (404 status code).
    """
    record = await cache.service_get(service_type, service_id)
    if not record:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Service not found",
        )

    return _as_dict(record)


@router.post("/{service_type}", status_code=201)
async def register_service(
    service_type: str,
    info: ServiceInfo,
    cache: cache_service.Cache = fastapi.Depends(features.get_cache),  # noqa: B008
) -> dict[str, Any]:
    """Register a service with an id and a host."""
    record = await cache.service_register(service_type, info.model_dump())
    return _as_dict(record)


@router.delete("/{service_type}/{service_id}")
async def remove_service(
    service_type: str,
    service_id: str,
    cache: cache_service.Cache = fastapi.Depends(features.get_cache),  # noqa: B008
) -> dict[str, bool]:
    """Remove a registered service."""
    await cache.service_remove(service_type, service_id)
    return {"removed": True}
