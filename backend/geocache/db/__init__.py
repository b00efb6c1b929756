"""Storage backends and the value types they exchange with the cache.

Submodules:
    - models: StorageKey, Query, OrderBy and ServiceRecord.
    - backend: the StorageBackend protocol and the optional capability
      protocols (ExtentCapable, IndexCapable, StreamCapable).
    - filters: where/geometry filter grammar shared by bundled backends.
    - memory: dictionary-backed backend for tests and development.
    - postgis: psycopg2/PostGIS backend.
    - database: get_backend factory selecting a backend from settings.
"""
