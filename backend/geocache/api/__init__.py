"""API router subpackage for the geocache service.

Submodules:
    - features: Feature query, dataset removal, table metadata, counts,
      extents, statistics and export endpoints over the cache.
    - services: Service registry endpoints.

Provider-declared routes are not defined here; they are registered at
application start by ``geocache.services.routes``.
"""
