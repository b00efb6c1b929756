"""PostgreSQL/PostGIS storage backend.

Persists provider features, table metadata and the service registry to a
PostgreSQL database with the PostGIS extension. Every dataset layer shares
one ``geocache_features`` table, keyed by the full ``type:key:layer`` name,
with the inserted GeoJSON feature kept as JSONB next to a PostGIS geometry.

psycopg2 is blocking, so each operation runs in the threadpool and opens
its own connection. Where and geometry filters follow
``geocache.db.filters`` and are always sent as bound parameters.

Example:
    Use the backend under a cache:
        >>> from geocache.core.config import Settings
        >>> from geocache.db.postgis import PostgisBackend
        >>> from geocache.services.cache import Cache
        >>> settings = Settings(database_url="postgresql://gis:gis@db/gis")
        >>> cache = Cache(PostgisBackend(settings))
"""

from __future__ import annotations

import decimal
import hashlib
import json
import logging
import uuid
from typing import TYPE_CHECKING, Any, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
from psycopg2 import sql
from starlette import concurrency

from geocache.core import errors
from geocache.db import filters
from geocache.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping, Sequence

    from geocache.core import config

logger = logging.getLogger(__name__)

SQL_OPERATORS: dict[str, str] = {
    "=": "=",
    "!=": "<>",
    "<>": "<>",
    ">": ">",
    ">=": ">=",
    "<": "<",
    "<=": "<=",
}
SQL_AGGREGATES: dict[str, str] = {
    "min": "MIN",
    "max": "MAX",
    "avg": "AVG",
    "stddev": "STDDEV",
    "count": "COUNT",
    "sum": "SUM",
}


def _json_value() -> sql.Composable:
    """A property as jsonb, NULL when missing or JSON null.

    Binds the field name as one parameter.
    """
    return sql.SQL("NULLIF(feature->'properties'->%s, 'null'::jsonb)")


def _typed_value(kind: str) -> sql.Composable:
    """A property as numeric or text, NULL unless its JSON type is ``kind``.

    Mirrors ``filters.same_kind``. Binds the field name twice.
    """
    if kind == "number":
        return sql.SQL(
            "(CASE WHEN jsonb_typeof(feature->'properties'->%s) = 'number'"
            " THEN (feature->'properties'->>%s)::numeric END)"
        )
    return sql.SQL(
        "(CASE WHEN jsonb_typeof(feature->'properties'->%s) = 'string'"
        " THEN (feature->'properties'->>%s) END) COLLATE \"C\""
    )


def _index_expression(field: str) -> sql.Composable:
    return sql.SQL("(NULLIF(feature->'properties'->{}, 'null'::jsonb))").format(
        sql.Literal(field)
    )


def _to_python(value: Any) -> Any:
    if isinstance(value, decimal.Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


class PostgisBackend:
    """PostGIS-backed implementation of the storage backend contract.

    Implements the optional extent, index and export stream capabilities.
    Creates its tables and enables PostGIS on initialization.
    """

    CREATE_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS geocache_features (
      id BIGSERIAL PRIMARY KEY,
      table_name TEXT NOT NULL,
      feature JSONB NOT NULL,
      geom geometry(Geometry, 4326)
    );
    CREATE INDEX IF NOT EXISTS geocache_features_table_name_idx
      ON geocache_features (table_name);
    CREATE TABLE IF NOT EXISTS geocache_info (
      table_name TEXT PRIMARY KEY,
      info JSONB NOT NULL DEFAULT '{}'::jsonb,
      updated_at TIMESTAMPTZ DEFAULT now()
    );
    CREATE TABLE IF NOT EXISTS geocache_services (
      service_type TEXT NOT NULL,
      id TEXT NOT NULL,
      host TEXT,
      PRIMARY KEY (service_type, id)
    );
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize backend with database settings.

        Args:
            settings: Application settings with the database URL and the
                export batch size.
        """
        self.settings = settings
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        """Create a new database connection."""
        return psycopg2.connect(self.settings.database_url)

    def _ensure_schema(self) -> None:
        """Ensure the PostGIS extension and the cache tables exist."""
        conn = self._connection()
        try:
            with conn, conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
                cur.execute(self.CREATE_SCHEMA_SQL)
        finally:
            conn.close()

    def _run(
        self,
        statements: Sequence[tuple[sql.Composable | str, Sequence[Any]]],
        fetch: bool = False,
    ) -> list[dict[str, Any]]:
        """Run statements in one transaction, returning the last result set."""
        conn = self._connection()
        try:
            with conn, conn.cursor(
                cursor_factory=psycopg2.extras.RealDictCursor
            ) as cur:
                for statement, params in statements:
                    cur.execute(statement, params)
                if fetch:
                    return [dict(row) for row in cur.fetchall()]
                return []
        finally:
            conn.close()

    async def _execute(
        self,
        statements: Sequence[tuple[sql.Composable | str, Sequence[Any]]],
        fetch: bool = False,
    ) -> list[dict[str, Any]]:
        return await concurrency.run_in_threadpool(self._run, statements, fetch)

    @staticmethod
    def _to_row(table_name: str, feature: Mapping[str, Any]) -> tuple[Any, ...]:
        """Convert a GeoJSON feature to a geocache_features row."""
        geometry = feature.get("geometry")
        return (
            table_name,
            psycopg2.extras.Json(dict(feature)),
            json.dumps(geometry) if geometry else None,
        )

    @staticmethod
    def _from_row(row: Mapping[str, Any]) -> dict[str, Any]:
        """Convert a result row back to a GeoJSON feature."""
        feature = row["feature"]
        if isinstance(feature, str):
            feature = json.loads(feature)
        return cast(dict[str, Any], feature)

    @staticmethod
    def _where(
        table_name: str, query: db_models.Query
    ) -> tuple[sql.Composable, list[Any]]:
        """Build the WHERE clause and its parameters for a query."""
        clauses: list[sql.Composable] = [sql.SQL("table_name = %s")]
        params: list[Any] = [table_name]
        for comparison in filters.parse_where(query.where):
            kind = "string" if isinstance(comparison.value, str) else "number"
            clauses.append(
                sql.SQL("{} {} %s").format(
                    _typed_value(kind),
                    sql.SQL(SQL_OPERATORS[comparison.op]),
                )
            )
            params.extend([comparison.field, comparison.field, comparison.value])
        if query.geometry is not None:
            clauses.append(
                sql.SQL("geom && ST_MakeEnvelope(%s, %s, %s, %s, 4326)")
            )
            params.extend(filters.parse_envelope(query.geometry))
        return sql.SQL(" AND ").join(clauses), params

    @classmethod
    def _select_statement(
        cls, table_name: str, query: db_models.Query
    ) -> tuple[sql.Composable, list[Any]]:
        where, params = cls._where(table_name, query)
        order = [
            sql.SQL("{} {} NULLS LAST").format(
                _json_value(), sql.SQL(clause.direction)
            )
            for clause in query.order_by
        ]
        order.append(sql.SQL("id"))
        statement = sql.SQL(
            "SELECT feature FROM geocache_features WHERE {} ORDER BY {}"
            " OFFSET %s LIMIT %s"
        ).format(where, sql.SQL(", ").join(order))
        params.extend(clause.field for clause in query.order_by)
        params.extend([query.result_offset or 0, query.result_record_count])
        return statement, params

    def _insert_statements(
        self,
        table_name: str,
        data: Mapping[str, Any],
        replace: bool,
    ) -> list[tuple[sql.Composable | str, Sequence[Any]]]:
        features = data.get("features") or []
        if data.get("type") == "Feature":
            features = [data]
        statements: list[tuple[sql.Composable | str, Sequence[Any]]] = []
        if replace:
            statements.append(
                ("DELETE FROM geocache_features WHERE table_name = %s", [table_name])
            )
            info = dict(data.get("info") or {})
            if data.get("name") is not None:
                info.setdefault("name", data["name"])
            statements.append(
                (
                    """
                    INSERT INTO geocache_info (table_name, info)
                    VALUES (%s, %s)
                    ON CONFLICT (table_name) DO UPDATE SET
                        info = EXCLUDED.info,
                        updated_at = now();
                    """,
                    [table_name, psycopg2.extras.Json(info)],
                )
            )
        for feature in features:
            statements.append(
                (
                    """
                    INSERT INTO geocache_features (table_name, feature, geom)
                    VALUES (%s, %s,
                        ST_SetSRID(ST_GeomFromGeoJSON(%s), 4326));
                    """,
                    self._to_row(table_name, feature),
                )
            )
        return statements

    async def insert(
        self, table: str, data: Mapping[str, Any], layer_id: int
    ) -> bool:
        """Replace the features and metadata of a dataset layer."""
        table_name = f"{table}:{layer_id}"
        await self._execute(self._insert_statements(table_name, data, True))
        logger.debug("stored %s", table_name)
        return True

    async def insert_partial(
        self, table: str, data: Mapping[str, Any], layer_id: int
    ) -> bool:
        """Append features to a dataset layer that was already inserted."""
        table_name = f"{table}:{layer_id}"
        await self._require_table(table_name)
        await self._execute(self._insert_statements(table_name, data, False))
        return True

    async def remove(self, table: str) -> None:
        await self._execute(
            [
                ("DELETE FROM geocache_features WHERE table_name = %s", [table]),
                ("DELETE FROM geocache_info WHERE table_name = %s", [table]),
            ]
        )

    async def _require_table(self, table: str) -> None:
        """Raise CacheMissError unless ``table`` was inserted."""
        await self.get_info(table)

    async def get_info(self, table: str) -> dict[str, Any]:
        rows = await self._execute(
            [("SELECT info FROM geocache_info WHERE table_name = %s", [table])],
            fetch=True,
        )
        if not rows:
            raise errors.CacheMissError(f"Resource not found: {table}")
        return cast(dict[str, Any], rows[0]["info"])

    async def update_info(self, table: str, info: Mapping[str, Any]) -> None:
        rows = await self._execute(
            [
                (
                    """
                    UPDATE geocache_info
                    SET info = info || %s, updated_at = now()
                    WHERE table_name = %s
                    RETURNING table_name;
                    """,
                    [psycopg2.extras.Json(dict(info)), table],
                )
            ],
            fetch=True,
        )
        if not rows:
            raise errors.CacheMissError(f"Resource not found: {table}")

    async def select(
        self, table: str, query: db_models.Query
    ) -> dict[str, Any]:
        """Return the matching features of a layer as a FeatureCollection."""
        table_name = f"{table}:{query.layer}"
        info = await self.get_info(table_name)
        statement, params = self._select_statement(table_name, query)
        rows = await self._execute([(statement, params)], fetch=True)
        return {
            "type": "FeatureCollection",
            "name": info.get("name"),
            "info": info,
            "features": [
                filters.project_feature(self._from_row(row), query.out_fields)
                for row in rows
            ],
        }

    async def get_count(self, table: str, query: db_models.Query) -> int:
        where, params = self._where(table, query)
        await self._require_table(table)
        statement = sql.SQL(
            "SELECT count(*) AS count FROM geocache_features WHERE {}"
        ).format(where)
        rows = await self._execute([(statement, params)], fetch=True)
        return int(rows[0]["count"])

    @classmethod
    def _stat_statement(
        cls,
        table: str,
        field: str,
        out_name: str,
        stat_type: str,
        query: db_models.Query,
    ) -> tuple[sql.Composable, list[Any]]:
        """Build the aggregate query and its parameters.

        ``count`` counts non-null values; the other statistics only read
        JSON numbers, as the in-memory backend does.
        """
        group_fields = filters.split_fields(query.group_by)
        if stat_type == "count":
            value, value_params = _json_value(), [field]
        else:
            value, value_params = _typed_value("number"), [field, field]
        aggregate = sql.SQL("{}({}) AS {}").format(
            sql.SQL(SQL_AGGREGATES[stat_type]), value, sql.Identifier(out_name)
        )
        columns = [
            sql.SQL("{} AS {}").format(_json_value(), sql.Identifier(g))
            for g in group_fields
        ]
        where, where_params = cls._where(table, query)
        statement = sql.SQL("SELECT {} FROM geocache_features WHERE {}").format(
            sql.SQL(", ").join([*columns, aggregate]), where
        )
        if group_fields:
            statement = sql.SQL("{} GROUP BY {}").format(
                statement,
                sql.SQL(", ").join(
                    sql.SQL(str(i + 1)) for i in range(len(group_fields))
                ),
            )
        return statement, [*group_fields, *value_params, *where_params]

    async def get_stat(
        self,
        table: str,
        field: str,
        out_name: str,
        stat_type: str,
        query: db_models.Query,
    ) -> list[dict[str, Any]]:
        """Compute a statistic, one row per group when grouping is asked."""
        if stat_type not in SQL_AGGREGATES:
            raise errors.InvalidQueryError(f'Unknown statistic type "{stat_type}"')
        statement, params = self._stat_statement(
            table, field, out_name, stat_type, query
        )
        await self._require_table(table)
        rows = await self._execute([(statement, params)], fetch=True)
        return [{k: _to_python(v) for k, v in row.items()} for row in rows]

    async def get_extent(
        self, table: str, query: db_models.Query
    ) -> db_models.BBox | None:
        where, params = self._where(table, query)
        await self._require_table(table)
        statement = sql.SQL(
            """
            SELECT ST_XMin(ext) AS xmin, ST_YMin(ext) AS ymin,
                   ST_XMax(ext) AS xmax, ST_YMax(ext) AS ymax
            FROM (SELECT ST_Extent(geom) AS ext
                  FROM geocache_features WHERE {}) AS b;
            """
        ).format(where)
        rows = await self._execute([(statement, params)], fetch=True)
        bbox = [rows[0][k] for k in ("xmin", "ymin", "xmax", "ymax")] if rows else []
        if len(bbox) != 4 or any(v is None for v in bbox):
            return None
        return cast(db_models.BBox, tuple(map(float, bbox)))

    @staticmethod
    def _index_name(table: str, column: str) -> str:
        digest = hashlib.sha1(f"{table}:{column}".encode()).hexdigest()[:16]
        return f"geocache_idx_{digest}"

    async def add_indexes(self, table: str, options: Mapping[str, Any]) -> None:
        """Create property indexes for a layer and optionally a spatial one.

        Args:
            table: The layer table name.
            options: ``{"fields": [...], "geometry": bool}``.

        Raises:
            CacheMissError: If the layer was never inserted.
        """
        await self._require_table(table)
        statements: list[tuple[sql.Composable | str, Sequence[Any]]] = []
        for field in filters.split_fields(options.get("fields")):
            statements.append(
                (
                    sql.SQL(
                        "CREATE INDEX IF NOT EXISTS {} ON geocache_features"
                        " ({}) WHERE table_name = {}"
                    ).format(
                        sql.Identifier(self._index_name(table, field)),
                        _index_expression(field),
                        sql.Literal(table),
                    ),
                    [],
                )
            )
        if options.get("geometry"):
            statements.append(
                (
                    "CREATE INDEX IF NOT EXISTS geocache_features_geom_idx"
                    " ON geocache_features USING GIST (geom)",
                    [],
                )
            )
        if statements:
            await self._execute(statements)
            logger.info("created %d indexes for %s", len(statements), table)

    def create_export_stream(
        self, table: str, query: db_models.Query
    ) -> AsyncIterator[dict[str, Any]]:
        """Return a stream of matching features read from a server cursor.

        Filters are compiled before the stream is returned, so bad filters
        raise right away. The table is checked on the first iteration,
        before any feature is read.
        """
        statement, params = self._select_statement(table, query)
        return self._export(table, statement, params, query.out_fields)

    async def _export(
        self,
        table: str,
        statement: sql.Composable,
        params: list[Any],
        out_fields: str | None,
    ) -> AsyncIterator[dict[str, Any]]:
        await self._require_table(table)
        conn = await concurrency.run_in_threadpool(self._connection)
        try:
            cur = conn.cursor(
                name=f"geocache_export_{uuid.uuid4().hex}",
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
            await concurrency.run_in_threadpool(cur.execute, statement, params)
            while True:
                rows = await concurrency.run_in_threadpool(
                    cur.fetchmany, self.settings.export_batch_size
                )
                if not rows:
                    break
                for row in rows:
                    yield filters.project_feature(self._from_row(row), out_fields)
        finally:
            conn.close()

    async def service_count(self, service_type: str) -> int:
        rows = await self._execute(
            [
                (
                    "SELECT count(*) AS count FROM geocache_services"
                    " WHERE service_type = %s",
                    [service_type],
                )
            ],
            fetch=True,
        )
        return int(rows[0]["count"])

    async def service_get(
        self, service_type: str, service_id: str | None = None
    ) -> list[db_models.ServiceRecord] | db_models.ServiceRecord | None:
        """Return every service of a type, or the one matching ``service_id``."""
        statement = "SELECT * FROM geocache_services WHERE service_type = %s"
        params: list[Any] = [service_type]
        if service_id is not None:
            statement += " AND id = %s"
            params.append(service_id)
        rows = await self._execute([(statement + " ORDER BY id", params)], fetch=True)
        records = [db_models.ServiceRecord(**row) for row in rows]
        if service_id is None:
            return records
        return records[0] if records else None

    async def service_register(
        self, service_type: str, info: Mapping[str, Any]
    ) -> db_models.ServiceRecord:
        record = db_models.ServiceRecord.from_info(service_type, info)
        await self._execute(
            [
                (
                    """
                    INSERT INTO geocache_services (service_type, id, host)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (service_type, id) DO UPDATE SET
                        host = EXCLUDED.host;
                    """,
                    [record.service_type, record.id, record.host],
                )
            ]
        )
        return record

    async def service_remove(self, service_type: str, service_id: str) -> None:
        rows = await self._execute(
            [
                (
                    "DELETE FROM geocache_services"
                    " WHERE service_type = %s AND id = %s RETURNING id",
                    [service_type, service_id],
                )
            ],
            fetch=True,
        )
        if not rows:
            raise errors.CacheMissError(
                f"Service not found: {service_type}/{service_id}"
            )
