"""FastAPI application entrypoint and configuration.

This module provides the application factory that configures logging, sets
up CORS middleware, includes the cache and service registry routers,
registers provider-declared routes and exposes a health check endpoint.
Errors raised by the cache layer are mapped to HTTP status codes here.

Example:
    The application can be run with uvicorn:
        $ uvicorn geocache.main:app --reload

    Or built with providers programmatically:
        >>> from geocache.main import create_app
        >>> app = create_app(providers=[(provider, controller)])
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from geocache.api import features, services
from geocache.core import config, errors
from geocache.services import routes

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[errors.GeocacheError], int] = {
    errors.CacheMissError: 404,
    errors.InvalidQueryError: 400,
    errors.UnsupportedCapabilityError: 501,
}


async def _geocache_error_handler(
    _request: fastapi.Request, exc: Exception
) -> responses.JSONResponse:
    status_code = next(
        (code for kind, code in _ERROR_STATUS.items() if isinstance(exc, kind)),
        500,
    )
    return responses.JSONResponse(
        status_code=status_code,
        content={"detail": str(exc)},
    )


def create_app(
    providers: Iterable[tuple[routes.Provider, object]] = (),
) -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures the root log level, includes the cache and services routers,
    registers each provider's declared routes under the configured route
    prefix, adds CORS middleware and a health check endpoint.

    Args:
        providers: (provider, controller) pairs whose routes are registered.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Raises:
        ConfigurationError: If a provider declares an invalid route.
    """
    settings = config.get_settings()
    logging.basicConfig(level=settings.log_level)

    app = fastapi.FastAPI(title="Geocache", version="0.1.0")

    app.include_router(features.router)
    app.include_router(services.router)

    provider_router = fastapi.APIRouter(tags=["providers"])
    for provider, controller in providers:
        route_map = routes.register_provider_routes(
            provider,
            controller,
            provider_router,
            settings.route_prefix,
        )
        logger.info(
            "provider %s registered %d paths",
            provider.namespace,
            len(route_map),
        )
    app.include_router(provider_router)

    for kind in _ERROR_STATUS:
        app.add_exception_handler(kind, _geocache_error_handler)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
