"""Pluggable persistence facade for geospatial feature providers.

Providers store and query GeoJSON features, dataset metadata and service
registrations through one ``Cache`` contract, whatever storage backend is
plugged in underneath. The package also wires provider-declared routes onto
a FastAPI router.

- Translates geoservices query options (layer, where, geometry,
  orderByFields, ...) into backend-agnostic queries
- Detects optional backend capabilities (extent, indexes, export streams)
  at call time and degrades in a defined way when they are missing
- Ships an in-memory backend and a PostGIS backend
- Exposes the cache and the service registry over HTTP
"""
