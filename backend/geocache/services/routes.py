"""Registration of provider-declared routes on a FastAPI router.

A provider declares a namespace and a list of routes, each naming the HTTP
methods it answers and the controller method that handles it. This module
binds those declarations onto an ``APIRouter`` and returns a map of every
registered path to its methods. Wiring mistakes (unknown handler, invalid
HTTP method) raise ``ConfigurationError`` while registering, never while
serving requests.

Example:
    Register a provider's routes under a prefix:
        >>> router = fastapi.APIRouter()
        >>> provider = Provider(
        ...     namespace="obs",
        ...     routes=[ProviderRoute("/obs/{id}", ["GET"], "get_observation")],
        ... )
        >>> register_provider_routes(provider, controller, router, "/providers")
        {"/providers/obs/{id}": ["GET"]}
"""

from __future__ import annotations

import dataclasses
import logging
import posixpath
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from geocache.core import errors

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    import fastapi

logger = logging.getLogger(__name__)

HTTP_METHODS: frozenset[str] = frozenset(
    ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
)


@dataclasses.dataclass(frozen=True)
class ProviderRoute:
    """A route declared by a provider.

    Attributes:
        path: Route path relative to the route prefix.
        methods: HTTP methods served on the path.
        handler: Name of the controller method handling the route.
    """

    path: str
    methods: Sequence[str]
    handler: str

    @classmethod
    def from_value(cls, value: ProviderRoute | Mapping[str, Any]) -> ProviderRoute:
        """Accept either a ProviderRoute or a plain mapping declaration."""
        if isinstance(value, ProviderRoute):
            return value
        return cls(
            path=value["path"],
            methods=list(value.get("methods") or []),
            handler=value["handler"],
        )


@dataclasses.dataclass
class Provider:
    """A provider's route declarations.

    Attributes:
        namespace: Provider name, used in error messages.
        routes: Route declarations, as ProviderRoute or mappings.
    """

    namespace: str
    routes: Sequence[ProviderRoute | Mapping[str, Any]] = ()


def compose_path(route_prefix: str, route: str) -> str:
    """Join a route onto the prefix, POSIX style."""
    return posixpath.join(route_prefix or "/", route.lstrip("/"))


def validate_http_methods(methods: Sequence[str]) -> None:
    """Check that every method is a supported HTTP method.

    Raises:
        ConfigurationError: If ``methods`` is empty or holds an unknown
            method.
    """
    if not methods:
        raise errors.ConfigurationError("Route declares no HTTP methods")
    invalid = [m for m in methods if m.upper() not in HTTP_METHODS]
    if invalid:
        raise errors.ConfigurationError(
            f"Invalid HTTP methods {invalid}; expected a subset of "
            f"{sorted(HTTP_METHODS)}"
        )


def _bind_controller(
    controller: object, route: ProviderRoute, namespace: str
) -> Callable[..., Any]:
    handler = getattr(controller, route.handler, None)
    if handler is None or not callable(handler):
        raise errors.ConfigurationError(
            f'Handler "{route.handler}" assigned to route "{route.path}" by '
            f'the "{namespace}" provider is undefined for the controller'
        )
    return handler


def register_provider_routes(
    provider: Provider,
    controller: object,
    router: fastapi.APIRouter,
    route_prefix: str = "",
) -> dict[str, list[str]]:
    """Register every route a provider declares on a router.

    Args:
        provider: Provider exposing ``namespace`` and ``routes``.
        controller: Object whose bound methods handle the routes.
        router: FastAPI router receiving the routes.
        route_prefix: Prefix joined onto every route path.

    Returns:
        Map of each registered path to the methods registered on it, in
        registration order. Paths declared by several routes accumulate
        their methods.

    Raises:
        ConfigurationError: If a route names an undefined handler or an
            invalid HTTP method.
    """
    route_map: dict[str, list[str]] = {}
    for declaration in provider.routes:
        route = ProviderRoute.from_value(declaration)
        validate_http_methods(route.methods)
        path = compose_path(route_prefix, route.path)
        endpoint = _bind_controller(controller, route, provider.namespace)
        methods = [m.upper() for m in route.methods]

        for method in methods:
            router.add_api_route(path, endpoint, methods=[method])
        route_map.setdefault(path, []).extend(methods)
        logger.info(
            "registered %s %s for provider %s",
            ",".join(methods),
            path,
            provider.namespace,
        )
    return route_map
