"""Tests for the DuckDB tabular store.

This module contains unit tests for registering collections as the ``data``
table, running SQL against it and reconciling results with the original
geometries through ``_rowid``. An in-memory DuckDB database is used so the
tests need no files beyond tmp_path.

The helper functions for type inference, value encoding, row identity and
geometry decoding are covered as well.
"""

from __future__ import annotations

import asyncio
import copy
import pathlib
from typing import Any

import duckdb
import pytest

from vecgeo.core import config, errors
from vecgeo.db import database


def _settings(tmp_path: pathlib.Path, **overrides: Any) -> config.Settings:
    values: dict[str, Any] = {
        "storage_dir": tmp_path / "uploads",
        "duckdb_sources": [config.MEMORY_SOURCE],
    }
    values.update(overrides)
    return config.Settings(**values)


def _store(tmp_path: pathlib.Path, **overrides: Any) -> database.DuckDBTabularStore:
    store = database.DuckDBTabularStore(_settings(tmp_path, **overrides))
    assert asyncio.run(store.initialize()) is True
    return store


def _cities() -> dict[str, Any]:
    rows = [
        ("Paris", "FR", 2100000, [2.35, 48.85]),
        ("Lyon", "FR", 520000, [4.83, 45.76]),
        ("Berlin", "DE", 3600000, [13.4, 52.52]),
    ]
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {"name": name, "country": country, "pop": pop},
                "geometry": {"type": "Point", "coordinates": coords},
            }
            for name, country, pop, coords in rows
        ],
    }


def test_quote_ident_doubles_quotes() -> None:
    """Test identifier quoting with embedded double quotes."""
    assert database.quote_ident('a"b') == '"a""b"'


def test_infer_sql_type() -> None:
    """Test type inference from sampled values."""
    assert database.infer_sql_type([1, 2.5, None]) == "DOUBLE"
    assert database.infer_sql_type([True, None, False]) == "BOOLEAN"
    assert database.infer_sql_type([1, "a"]) == "VARCHAR"
    assert database.infer_sql_type([True, 1]) == "VARCHAR"
    assert database.infer_sql_type([None, float("inf")]) == "VARCHAR"
    assert database.infer_sql_type([float("nan"), 3]) == "DOUBLE"


def test_encode_value() -> None:
    """Test conversion of property values into engine parameters."""
    assert database.encode_value(float("nan"), 10) is None
    assert database.encode_value(True, 10) is True
    assert database.encode_value({"a": [1, 2]}, 100) == '{"a": [1, 2]}'
    assert database.encode_value(["x" * 50], 10) == '["xxxxxxxx'
    assert database.encode_value("a\x00b", 10) == "ab"
    assert database.encode_value(12, 10) == 12


def test_extract_rowid() -> None:
    """Test validation of the _rowid of result rows."""
    assert database.extract_rowid({"_rowid": 2}, 3) == 2
    assert database.extract_rowid({"_rowid": 1.0}, 3) == 1
    assert database.extract_rowid({"_rowid": 1.5}, 3) is None
    assert database.extract_rowid({"_rowid": 3}, 3) is None
    assert database.extract_rowid({"_rowid": -1}, 3) is None
    assert database.extract_rowid({"_rowid": True}, 3) is None
    assert database.extract_rowid({"pop": 1}, 3) is None


def test_collect_columns_skips_reserved_names() -> None:
    """Test that blank names and any spelling of _rowid are not registered."""
    features = [
        {
            "type": "Feature",
            "properties": {"a": 1, " ": 2, "_rowid": 9, "_ROWID": 8},
            "geometry": None,
        },
        {"type": "Feature", "properties": {"b": 1, "_RowId": 2}, "geometry": None},
        {"type": "Feature", "properties": None, "geometry": None},
    ]
    assert database.collect_columns(features) == {"a": "a", "b": "b"}


def test_collect_columns_renames_case_clashes() -> None:
    """Test that keys equal ignoring case get distinct column names."""
    features = [
        {
            "type": "Feature",
            "properties": {"Name": "a", "name": "b", "name_2": "c"},
            "geometry": None,
        },
        {"type": "Feature", "properties": {"NAME": "d"}, "geometry": None},
    ]
    assert database.collect_columns(features) == {
        "Name": "Name",
        "name_2": "name",
        "name_2_2": "name_2",
        "NAME_3": "NAME",
    }


def test_decode_geometry_formats() -> None:
    """Test geometry decoding from GeoJSON, WKT and WKB."""
    point = {"type": "Point", "coordinates": [1.0, 2.0]}
    assert database.decode_geometry(point) == point
    assert database.decode_geometry('{"type": "Point", "coordinates": [1, 2]}') == {
        "type": "Point",
        "coordinates": [1, 2],
    }
    assert database.decode_geometry("POINT (1 2)") == point
    wkb = bytes.fromhex("0101000000000000000000f03f0000000000000040")
    assert database.decode_geometry(wkb) == point
    assert database.decode_geometry("not a geometry") is None
    assert database.decode_geometry(None) is None


def test_register_and_query(tmp_path: pathlib.Path) -> None:
    """Test registering a collection and reconciling a predicate query."""
    store = _store(tmp_path)
    original = _cities()

    summary = store.register_collection(original)
    assert summary.rows_inserted == 3
    assert summary.rows_skipped == 0
    assert summary.consistent is True
    assert [(c.name, c.sql_type) for c in summary.columns] == [
        ("name", "VARCHAR"),
        ("country", "VARCHAR"),
        ("pop", "DOUBLE"),
    ]

    result = store.run_query("pop > 1000000", original)
    assert result.row_ids == [0, 2]
    assert [f["properties"]["name"] for f in result.collection["features"]] == [
        "Paris",
        "Berlin",
    ]
    features = result.collection["features"]
    for row_id, feature in zip(result.row_ids, features, strict=True):
        assert feature["geometry"] == original["features"][row_id]["geometry"]
        assert set(feature["properties"]) == {"name", "country", "pop"}


def test_query_projection_keeps_original_untouched(tmp_path: pathlib.Path) -> None:
    """Test that projected columns become the only properties."""
    store = _store(tmp_path)
    original = _cities()
    before = copy.deepcopy(original)
    store.register_collection(original)

    result = store.run_query(
        "SELECT _rowid, pop * 2 AS double_pop FROM data WHERE country = 'DE'",
        original,
    )

    assert result.columns == ["double_pop"]
    assert result.collection["features"][0]["properties"] == {"double_pop": 7200000.0}
    geometry = result.collection["features"][0]["geometry"]
    assert geometry is original["features"][2]["geometry"]
    assert original == before


def test_reregistration_replaces_table(tmp_path: pathlib.Path) -> None:
    """Test that registering again yields exactly the new feature count."""
    store = _store(tmp_path)
    store.register_collection(_cities())
    smaller = _cities()
    smaller["features"] = smaller["features"][:1]

    summary = store.register_collection(smaller)

    assert summary.rows_inserted == 1
    assert store.run_query("SELECT * FROM data", smaller).row_ids == [0]


def test_register_empty_collection(tmp_path: pathlib.Path) -> None:
    """Test that an empty collection is a no-op registration."""
    store = _store(tmp_path)
    store.register_collection(_cities())

    summary = store.register_collection({"type": "FeatureCollection", "features": []})

    assert summary.rows_expected == 0
    assert summary.rows_inserted == 0
    with pytest.raises(errors.QueryError):
        store.run_query("SELECT * FROM data", _cities())


def test_register_without_columns(tmp_path: pathlib.Path) -> None:
    """Test that collections without usable property names leave no table."""
    store = _store(tmp_path)
    collection = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "properties": {}, "geometry": None}],
    }

    summary = store.register_collection(collection)

    assert summary.consistent is False
    assert summary.rows_inserted == 0


def test_failing_rows_are_skipped(tmp_path: pathlib.Path) -> None:
    """Test adaptive batching skips only rows that fail on their own."""
    store = _store(tmp_path, schema_sample_size=1, insert_batch_size=4)
    collection = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "properties": {"v": 1.0}, "geometry": None},
            {"type": "Feature", "properties": {"v": "not a number"}, "geometry": None},
            {"type": "Feature", "properties": {"v": 3.0}, "geometry": None},
        ],
    }

    summary = store.register_collection(collection)

    assert summary.columns[0].sql_type == "DOUBLE"
    assert summary.rows_inserted == 2
    assert summary.rows_skipped == 1
    assert summary.consistent is False
    assert store.run_query("SELECT * FROM data", collection).row_ids == [0, 2]


def test_batch_size_recovers_after_skipped_row(
    tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test that full batches resume once a failing row is skipped."""
    store = _store(tmp_path, schema_sample_size=1, insert_batch_size=4)
    values: list[Any] = [float(i) for i in range(10)]
    values[1] = "not a number"
    collection = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "properties": {"v": v}, "geometry": None}
            for v in values
        ],
    }
    batch_sizes: list[int] = []
    insert_rows = store._insert_rows

    def record(conn: Any, insert_sql: str, width: int, rows: list[Any]) -> None:
        batch_sizes.append(len(rows))
        insert_rows(conn, insert_sql, width, rows)

    monkeypatch.setattr(store, "_insert_rows", record)

    summary = store.register_collection(collection)

    assert summary.rows_inserted == 9
    assert summary.rows_skipped == 1
    assert batch_sizes == [4, 2, 1, 1, 4, 4]


def test_case_clashing_names_register(tmp_path: pathlib.Path) -> None:
    """Test that keys equal ignoring case still produce a queryable table."""
    store = _store(tmp_path)
    collection = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {"Name": "a", "name": "b", "pop": 1},
                "geometry": None,
            }
        ],
    }

    summary = store.register_collection(collection)

    assert [c.name for c in summary.columns] == ["Name", "name_2", "pop"]
    assert summary.consistent is True
    result = store.run_query("pop > 0", collection)
    assert result.row_ids == [0]
    assert result.collection["features"][0]["properties"] == {
        "Name": "a",
        "name_2": "b",
        "pop": 1.0,
    }


def test_rowid_spelling_in_properties(tmp_path: pathlib.Path) -> None:
    """Test that an upper-case _ROWID property cannot replace row identity."""
    store = _store(tmp_path)
    collection = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "properties": {"_ROWID": 7, "pop": 1}, "geometry": None}
        ],
    }

    summary = store.register_collection(collection)

    assert [c.name for c in summary.columns] == ["pop"]
    assert summary.rows_inserted == 1
    assert summary.consistent is True
    assert store.run_query("pop > 0", collection).row_ids == [0]


def test_engine_error_during_registration_is_logged(
    tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test that an engine failure after table creation is not raised."""
    store = _store(tmp_path)

    def fail(conn: Any, expected: int) -> bool:
        raise duckdb.Error("connection lost")

    monkeypatch.setattr(store, "_check_consistency", fail)

    summary = store.register_collection(_cities())

    assert summary.consistent is False
    assert summary.rows_inserted == 3


def test_awkward_column_names_and_values(tmp_path: pathlib.Path) -> None:
    """Test quoting of names and encoding of nested, boolean and NaN values."""
    store = _store(tmp_path)
    collection = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {
                    'say "hi"': "it's",
                    "my col": float("nan"),
                    "flag": True,
                    "tags": ["a", "b"],
                },
                "geometry": None,
            }
        ],
    }

    summary = store.register_collection(collection)
    assert summary.rows_inserted == 1

    sql = 'SELECT * FROM data WHERE "say ""hi""" = ' + "'it''s' AND flag"
    result = store.run_query(sql, collection)
    props = result.collection["features"][0]["properties"]
    assert props["my col"] is None
    assert props["tags"] == '["a", "b"]'


def test_query_errors(tmp_path: pathlib.Path) -> None:
    """Test empty SQL, engine errors, empty results and missing _rowid."""
    store = _store(tmp_path)
    original = _cities()
    store.register_collection(original)

    with pytest.raises(errors.QueryError, match="Please enter a SQL query"):
        store.run_query("   ", original)
    with pytest.raises(errors.QueryError):
        store.run_query("SELEC * FROM data", original)
    with pytest.raises(errors.EmptyResultError, match="no results"):
        store.run_query("pop < 0", original)
    with pytest.raises(errors.RowIdentityError, match="_rowid"):
        store.run_query("SELECT name FROM data", original)


def test_out_of_range_rowids_are_discarded(tmp_path: pathlib.Path) -> None:
    """Test that rows with unusable _rowid are dropped and counted."""
    store = _store(tmp_path)
    original = _cities()
    store.register_collection(original)

    result = store.run_query(
        "SELECT _rowid FROM data UNION ALL SELECT 99 AS _rowid", original
    )

    assert sorted(result.row_ids) == [0, 1, 2]
    assert result.discarded == 1


def test_initialize_falls_back_to_next_source(tmp_path: pathlib.Path) -> None:
    """Test that a broken source is skipped in favour of the next one."""
    broken = tmp_path / "broken.duckdb"
    broken.write_bytes(b"this is not a duckdb database file" * 512)
    store = database.DuckDBTabularStore(
        _settings(tmp_path, duckdb_sources=[str(broken), config.MEMORY_SOURCE])
    )

    assert asyncio.run(store.initialize()) is True
    assert store.source == config.MEMORY_SOURCE
    assert asyncio.run(store.initialize()) is True


def test_engine_unavailable(tmp_path: pathlib.Path) -> None:
    """Test that every SQL operation fails when no source works."""
    broken = tmp_path / "broken.duckdb"
    broken.write_bytes(b"this is not a duckdb database file" * 512)
    settings = _settings(tmp_path, duckdb_sources=[str(broken)])
    store = database.DuckDBTabularStore(settings)

    assert asyncio.run(store.initialize()) is False
    assert store.available is False
    with pytest.raises(
        errors.EngineUnavailableError, match="SQL engine is not initialized"
    ):
        store.register_collection(_cities())
    with pytest.raises(errors.EngineUnavailableError):
        store.run_query("pop > 0", _cities())


def test_scan_parquet(tmp_path: pathlib.Path) -> None:
    """Test that Parquet rows become features and rows without geometry drop."""
    path = tmp_path / "points.parquet"
    conn = duckdb.connect()
    conn.execute(
        "COPY (SELECT 'POINT (1 2)' AS geometry, 5 AS pop "
        "UNION ALL SELECT NULL, 6) "
        f"TO '{path}' (FORMAT PARQUET)"
    )
    conn.close()
    store = _store(tmp_path)

    collection = store.scan_parquet(path)

    assert collection["features"] == [
        {
            "type": "Feature",
            "properties": {"pop": 5},
            "geometry": {"type": "Point", "coordinates": [1.0, 2.0]},
        }
    ]


def test_scan_invalid_parquet(tmp_path: pathlib.Path) -> None:
    """Test that unreadable Parquet files raise FormatError."""
    path = tmp_path / "broken.parquet"
    path.write_bytes(b"nope")
    store = _store(tmp_path)

    with pytest.raises(errors.FormatError, match="Cannot read Parquet"):
        store.scan_parquet(path)
