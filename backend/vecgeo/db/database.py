"""Embedded SQL engine adapter for the active dataset.

The store owns a single DuckDB connection and a single table named ``data``.
A collection is registered by inferring one SQL column per property key and
inserting one row per feature, keyed by a synthetic ``_rowid`` equal to the
feature's position in the collection. SQL results carry no geometry: they
are mapped back to the registered collection through ``_rowid`` alone.

Example:
    Register a collection and filter it with SQL:
        >>> from vecgeo.core.config import get_settings
        >>> from vecgeo.db.database import DuckDBTabularStore
        >>> store = DuckDBTabularStore(get_settings())
        >>> await store.initialize()
        >>> store.register_collection(collection)
        >>> result = store.run_query("pop > 1000000", collection)
        >>> result.row_ids
        [0]
"""

from __future__ import annotations

import asyncio
import base64
import datetime
import decimal
import json
import logging
import math
import re
import threading
import uuid
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, cast

import duckdb
import shapely
import shapely.errors

from vecgeo.core import errors
from vecgeo.db import models as db_models
from vecgeo.db.models import ROWID_COLUMN, TABLE_NAME

if TYPE_CHECKING:
    import pathlib

    from vecgeo.core import config
    from vecgeo.db.models import Feature, FeatureCollection, Geometry

logger = logging.getLogger(__name__)

GEOMETRY_COLUMN_NAMES = ("geometry", "geom", "wkb_geometry", "the_geom", "shape")

_SELECT_PATTERN = re.compile(r"^\s*select\b", re.IGNORECASE)


def quote_ident(name: str) -> str:
    """Quote an identifier, doubling embedded double quotes."""
    return '"' + name.replace('"', '""') + '"'


def _is_finite_number(value: object) -> bool:
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def infer_sql_type(values: Sequence[Any]) -> db_models.SqlType:
    """Infer the SQL type of a column from sampled values.

    Nulls and non-finite numbers are ignored since both are stored as NULL.
    A column is DOUBLE when every remaining value is a finite number,
    BOOLEAN when every remaining value is a boolean and VARCHAR otherwise,
    including when no value remains.
    """
    present = [
        v
        for v in values
        if v is not None and not (isinstance(v, float) and not math.isfinite(v))
    ]
    if not present:
        return "VARCHAR"
    if all(_is_finite_number(v) for v in present):
        return "DOUBLE"
    if all(isinstance(v, bool) for v in present):
        return "BOOLEAN"
    return "VARCHAR"


def encode_value(value: Any, max_length: int) -> Any:
    """Convert a property value into a parameter the engine accepts.

    Args:
        value: Property value from a GeoJSON record.
        max_length: Maximum length of JSON-encoded nested values.

    Returns:
        None for nulls and non-finite numbers, booleans and numbers as-is,
        nested objects and arrays as truncated JSON text and everything else
        as text with NUL bytes stripped.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict | list | tuple):
        try:
            return json.dumps(value, default=str)[:max_length]
        except (TypeError, ValueError):
            return None
    return str(value).replace("\x00", "")


def to_scalar(value: Any) -> Any:
    """Normalize an engine value into something JSON can carry."""
    if isinstance(value, decimal.Decimal):
        return float(value)
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, datetime.date | datetime.time):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, bytes | bytearray | memoryview):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, list | tuple):
        return [to_scalar(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_scalar(v) for k, v in value.items()}
    return value


def extract_rowid(row: dict[str, Any], total: int) -> int | None:
    """Return the validated _rowid of a result row, or None.

    The value must be present, integral and within [0, total).
    """
    value = row.get(ROWID_COLUMN)
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if not isinstance(value, int):
        return None
    if 0 <= value < total:
        return value
    return None


def _unique_name(key: str, taken: set[str]) -> str:
    suffix = 2
    while f"{key}_{suffix}".casefold() in taken:
        suffix += 1
    return f"{key}_{suffix}"


def collect_columns(features: Sequence[Feature]) -> dict[str, str]:
    """Map column names to the property keys they are filled from.

    Keys are taken in first-seen order. Blank keys and any spelling of
    _rowid are skipped. Column names are unique ignoring case: a key that
    differs from an earlier one only by case gets a numbered name.
    """
    columns: dict[str, str] = {}
    seen: set[str] = set()
    taken: set[str] = set()
    for feature in features:
        for key in (feature.get("properties") or {}):
            if not isinstance(key, str) or not key.strip():
                continue
            if key in seen or key.casefold() == ROWID_COLUMN:
                continue
            seen.add(key)
            name = key
            if name.casefold() in taken:
                name = _unique_name(key, taken)
            taken.add(name.casefold())
            columns[name] = key
    return columns


def decode_geometry(value: Any) -> Geometry | None:
    """Decode a geometry cell from GeoJSON, WKT or WKB."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value if value.get("type") else None  # type: ignore[return-value]
    try:
        if isinstance(value, bytes | bytearray | memoryview):
            geom = shapely.from_wkb(bytes(value))
        elif isinstance(value, str):
            text = value.strip()
            if text.startswith("{"):
                parsed = json.loads(text)
                if isinstance(parsed, dict) and parsed.get("type"):
                    return parsed
                return None
            geom = shapely.from_wkt(text)
        else:
            return None
    except (shapely.errors.GEOSException, ValueError, TypeError):
        return None
    if geom is None or geom.is_empty:
        return None
    return json.loads(shapely.to_geojson(geom))


class TabularStoreProtocol(Protocol):
    """Protocol interface for the SQL engine backing the active dataset.

    Implementations register a collection as the ``data`` table, run user
    SQL against it and decode Parquet files into collections.
    """

    @property
    def available(self) -> bool: ...

    async def initialize(self) -> bool: ...

    def register_collection(
        self, collection: FeatureCollection
    ) -> db_models.RegistrationSummary: ...

    def run_query(
        self, sql_text: str, original: FeatureCollection
    ) -> db_models.QueryResult: ...

    def scan_parquet(self, path: pathlib.Path) -> FeatureCollection: ...

    def close(self) -> None: ...


class DuckDBTabularStore(TabularStoreProtocol):
    """DuckDB-backed store for the active dataset.

    The connection is opened lazily by initialize(), which tries every
    configured source in order. When none works the store stays unavailable
    and every SQL operation fails with EngineUnavailableError, while the rest
    of the application keeps working.
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize an unconnected store.

        Args:
            settings: Application settings with DuckDB sources and insert
                tuning values.
        """
        self.settings = settings
        self.source: str | None = None
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._attempted = False
        self._lock = threading.Lock()
        self._init_lock = asyncio.Lock()

    @property
    def available(self) -> bool:
        return self._conn is not None

    @staticmethod
    def _open(source: str) -> duckdb.DuckDBPyConnection:
        """Connect to a source and check that it answers a query."""
        conn = duckdb.connect(source)
        try:
            conn.execute("SELECT 1").fetchone()
        except duckdb.Error:
            conn.close()
            raise
        return conn

    async def initialize(self) -> bool:
        """Open the engine connection from the first working source.

        Safe to call repeatedly; only the first call tries the sources.

        Returns:
            True if the engine is available.
        """
        async with self._init_lock:
            if self._attempted:
                return self.available
            self._attempted = True

            for source in self.settings.duckdb_sources:
                try:
                    self._conn = await asyncio.to_thread(self._open, source)
                except duckdb.Error as exc:
                    logger.warning("DuckDB source %s failed: %s", source, exc)
                    continue
                self.source = source
                logger.info("DuckDB initialized from %s", source)
                return True

            logger.error("DuckDB unavailable from every source, SQL features disabled")
            return False

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise errors.EngineUnavailableError(
                "SQL engine is not initialized. SQL filtering is unavailable."
            )
        return self._conn

    def _infer_schema(
        self, features: Sequence[Feature], columns: dict[str, str]
    ) -> list[db_models.ColumnSchema]:
        sample = features[: self.settings.schema_sample_size]
        return [
            db_models.ColumnSchema(
                name=name,
                sql_type=infer_sql_type(
                    [(f.get("properties") or {}).get(key) for f in sample]
                ),
                key=key,
            )
            for name, key in columns.items()
        ]

    def _create_table(
        self,
        conn: duckdb.DuckDBPyConnection,
        schema: list[db_models.ColumnSchema],
    ) -> None:
        column_defs = [f"{quote_ident(ROWID_COLUMN)} INTEGER"] + [
            f"{quote_ident(column.name)} {column.sql_type}" for column in schema
        ]
        try:
            conn.execute(
                f"CREATE TABLE {quote_ident(TABLE_NAME)} ({', '.join(column_defs)})"
            )
        except duckdb.Error as exc:
            raise errors.RegistrationError(f"Cannot create table: {exc}") from exc

    def _insert_rows(
        self,
        conn: duckdb.DuckDBPyConnection,
        insert_sql: str,
        width: int,
        rows: list[list[Any]],
    ) -> None:
        placeholders = "(" + ", ".join(["?"] * width) + ")"
        values = ", ".join([placeholders] * len(rows))
        params = [value for row in rows for value in row]
        conn.execute(f"{insert_sql} VALUES {values}", params)

    def _insert_adaptive(
        self,
        conn: duckdb.DuckDBPyConnection,
        schema: list[db_models.ColumnSchema],
        rows: list[list[Any]],
    ) -> tuple[int, int]:
        """Insert rows in batches, halving the batch size on failure.

        A failing one-row batch is skipped and the configured batch size is
        restored for the rows after it. Only rows of successful statements
        are counted as inserted.

        Returns:
            Tuple of (inserted, skipped) row counts.
        """
        insert_cols = [quote_ident(ROWID_COLUMN)] + [
            quote_ident(column.name) for column in schema
        ]
        insert_sql = f"INSERT INTO {quote_ident(TABLE_NAME)} ({', '.join(insert_cols)})"
        width = len(insert_cols)

        full_size = max(1, self.settings.insert_batch_size)
        batch_size = full_size
        position = inserted = skipped = 0
        while position < len(rows):
            batch = rows[position : position + batch_size]
            try:
                self._insert_rows(conn, insert_sql, width, batch)
            except duckdb.Error as exc:
                if batch_size > 1:
                    batch_size = max(1, batch_size // 2)
                    logger.debug(
                        "Insert at row %d failed, batch size now %d: %s",
                        position,
                        batch_size,
                        exc,
                    )
                    continue
                skipped += 1
                if skipped <= self.settings.max_logged_skips:
                    logger.warning("Skipping row %d: %s", position, exc)
                elif skipped == self.settings.max_logged_skips + 1:
                    logger.warning("Further skipped rows will not be logged")
                position += 1
                batch_size = full_size
                continue
            position += len(batch)
            inserted += len(batch)
        return inserted, skipped

    def _check_consistency(
        self, conn: duckdb.DuckDBPyConnection, expected: int
    ) -> bool:
        row = conn.execute(
            f"SELECT COUNT(*), MAX({quote_ident(ROWID_COLUMN)}) "
            f"FROM {quote_ident(TABLE_NAME)}"
        ).fetchone()
        count, max_rowid = row if row is not None else (0, None)
        if count != expected or max_rowid != expected - 1:
            logger.warning(
                "Registered table is inconsistent: %s rows (max _rowid %s), "
                "expected %d rows",
                count,
                max_rowid,
                expected,
            )
            return False
        return True

    def register_collection(
        self, collection: FeatureCollection
    ) -> db_models.RegistrationSummary:
        """Register a collection as the ``data`` table.

        Any previous table is dropped first. Empty collections and
        collections without usable property names leave no table behind.
        Insert failures are recovered by shrinking the batch size and
        skipping rows that fail on their own. These and any other engine
        errors during registration are logged, never raised.

        Args:
            collection: Full original dataset; _rowid is each feature's
                position in collection["features"].

        Returns:
            RegistrationSummary describing the loaded table.

        Raises:
            EngineUnavailableError: If the engine is not initialized.
        """
        conn = self._require_connection()
        features = collection["features"]
        summary = db_models.RegistrationSummary(rows_expected=len(features))

        with self._lock:
            try:
                loaded = self._load_table(conn, features, summary)
            except duckdb.Error as exc:
                logger.error("Registration failed: %s", exc)
                summary.consistent = False
                return summary
        if not loaded:
            return summary

        if summary.rows_skipped:
            logger.warning(
                "Registered %d features, %d skipped",
                summary.rows_inserted,
                summary.rows_skipped,
            )
        else:
            logger.info("Registered %d features", summary.rows_inserted)
        return summary

    def _load_table(
        self,
        conn: duckdb.DuckDBPyConnection,
        features: Sequence[Feature],
        summary: db_models.RegistrationSummary,
    ) -> bool:
        """Replace the ``data`` table with features, filling summary.

        Returns:
            True if a table was created.
        """
        conn.execute(f"DROP TABLE IF EXISTS {quote_ident(TABLE_NAME)}")
        if not features:
            logger.info("No features to register")
            return False

        columns = collect_columns(features)
        if not columns:
            logger.warning("No usable columns to register, SQL table left absent")
            summary.consistent = False
            return False

        schema = self._infer_schema(features, columns)
        try:
            self._create_table(conn, schema)
        except errors.RegistrationError as exc:
            logger.error("%s", exc)
            summary.consistent = False
            return False
        summary.columns = schema

        max_length = self.settings.max_value_length
        rows = [
            [index]
            + [
                encode_value(
                    (feature.get("properties") or {}).get(column.source_key),
                    max_length,
                )
                for column in schema
            ]
            for index, feature in enumerate(features)
        ]
        summary.rows_inserted, summary.rows_skipped = self._insert_adaptive(
            conn, schema, rows
        )
        summary.consistent = self._check_consistency(conn, len(features))
        return True

    def run_query(
        self, sql_text: str, original: FeatureCollection
    ) -> db_models.QueryResult:
        """Run user SQL and reconcile the rows with the original dataset.

        Text that does not start with SELECT is treated as a predicate and
        wrapped as ``SELECT * FROM data WHERE <text>``. Each result row is
        matched to ``original["features"][_rowid]``; the returned record keeps
        that geometry and takes the row's other columns as its properties.

        Args:
            sql_text: Full SELECT statement or bare predicate.
            original: Dataset registered with register_collection().

        Returns:
            QueryResult with the reconciled collection.

        Raises:
            EngineUnavailableError: If the engine is not initialized.
            QueryError: If the SQL is empty or fails in the engine.
            EmptyResultError: If the query returns no rows.
            RowIdentityError: If no row maps to a valid _rowid.
        """
        conn = self._require_connection()
        sql = (sql_text or "").strip()
        if not sql:
            raise errors.QueryError("Please enter a SQL query.")
        if not _SELECT_PATTERN.match(sql):
            sql = f"SELECT * FROM {quote_ident(TABLE_NAME)} WHERE {sql}"

        with self._lock:
            try:
                cursor = conn.execute(sql)
                names = [d[0] for d in cursor.description or []]
                records = cursor.fetchall()
            except duckdb.Error as exc:
                raise errors.QueryError(str(exc)) from exc

        if not records:
            raise errors.EmptyResultError("Query returned no results.")

        source_features = original["features"]
        total = len(source_features)
        columns = [name for name in names if name != ROWID_COLUMN]
        features: list[Feature] = []
        row_ids: list[int] = []
        for record in records:
            row = dict(zip(names, record, strict=True))
            row_id = extract_rowid(row, total)
            if row_id is None:
                continue
            reconciled = cast("Feature", dict(source_features[row_id]))
            reconciled["properties"] = {
                name: to_scalar(row[name]) for name in columns
            }
            features.append(reconciled)
            row_ids.append(row_id)

        if not features:
            raise errors.RowIdentityError("Query must include _rowid or use SELECT *")

        discarded = len(records) - len(features)
        if discarded:
            logger.info("Discarded %d rows without a usable _rowid", discarded)
        logger.info("Query returned %d rows", len(records))
        return db_models.QueryResult(
            collection={"type": "FeatureCollection", "features": features},
            row_ids=row_ids,
            columns=columns,
            discarded=discarded,
        )

    def scan_parquet(self, path: pathlib.Path) -> FeatureCollection:
        """Decode a Parquet or GeoParquet file into a collection.

        The geometry column is the first column named like one of
        GEOMETRY_COLUMN_NAMES (case-insensitive). Rows whose geometry is
        missing or cannot be decoded are dropped.

        Raises:
            EngineUnavailableError: If the engine is not initialized.
            FormatError: If DuckDB cannot read the file.
        """
        conn = self._require_connection()
        with self._lock:
            try:
                schema = conn.execute(
                    "DESCRIBE SELECT * FROM read_parquet(?)", [str(path)]
                ).fetchall()
                cursor = conn.execute("SELECT * FROM read_parquet(?)", [str(path)])
                names = [d[0] for d in cursor.description or []]
                records = cursor.fetchall()
            except duckdb.Error as exc:
                raise errors.FormatError(f"Cannot read Parquet file: {exc}") from exc

        geometry_col = next(
            (
                row[0]
                for row in schema
                if str(row[0]).lower() in GEOMETRY_COLUMN_NAMES
            ),
            None,
        )
        if geometry_col is None:
            logger.warning("No geometry column found in %s", path.name)

        features: list[Feature] = []
        for index, record in enumerate(records):
            row = dict(zip(names, record, strict=True))
            geometry = decode_geometry(row.get(geometry_col)) if geometry_col else None
            if geometry is None:
                logger.debug("Could not parse geometry for row %d", index)
                continue
            features.append(
                {
                    "type": "Feature",
                    "properties": {
                        key: to_scalar(value)
                        for key, value in row.items()
                        if key != geometry_col
                    },
                    "geometry": geometry,
                }
            )
        logger.info(
            "Read %d of %d Parquet rows with geometry", len(features), len(records)
        )
        return {"type": "FeatureCollection", "features": features}

    def close(self) -> None:
        """Close the engine connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def get_tabular_store(settings: config.Settings) -> TabularStoreProtocol:
    """Factory function to create the tabular store.

    Args:
        settings: Application settings with DuckDB sources.

    Returns:
        DuckDBTabularStore instance, not yet initialized.
    """
    return DuckDBTabularStore(settings)
