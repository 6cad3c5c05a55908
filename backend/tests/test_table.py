"""Tests for attribute table search, sorting and paging."""

from __future__ import annotations

from typing import Any

from vecgeo.services import table


def _collection() -> dict[str, Any]:
    rows = [
        {"name": "Paris", "pop": 2100000, "meta": {"capital": True}},
        {"name": "Lyon", "pop": None},
        {"name": "Berlin", "pop": 3600000},
        {"name": "Bonn", "pop": 330000},
    ]
    return {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "properties": p, "geometry": None} for p in rows
        ],
    }


def test_first_page_renders_nested_values_as_json() -> None:
    """Test default paging and JSON rendering of nested values."""
    page = table.build_table_page(
        _collection(), ["name", "pop", "meta"], table.TableQuery(page_size=2)
    )
    assert page.rows == [
        ["Paris", 2100000, '{"capital": true}'],
        ["Lyon", None, None],
    ]
    assert page.row_numbers == [1, 2]
    assert page.total_pages == 2
    assert page.total_features == 4


def test_sort_descending_puts_nulls_last() -> None:
    """Test numeric descending sort with nulls at the end."""
    query = table.TableQuery(sort_column="pop", sort_direction="desc")
    page = table.build_table_page(_collection(), ["name"], query)
    assert [row[0] for row in page.rows] == ["Berlin", "Paris", "Bonn", "Lyon"]


def test_search_is_case_insensitive() -> None:
    """Test that search matches any property value."""
    query = table.TableQuery(search="BO")
    page = table.build_table_page(_collection(), ["name"], query)
    assert page.rows == [["Bonn"]]
    assert page.total_rows == 1


def test_page_is_clamped() -> None:
    """Test that out-of-range pages are clamped to the last page."""
    page = table.build_table_page(
        _collection(), ["name"], table.TableQuery(page=9, page_size=3)
    )
    assert page.page == 2
    assert page.rows == [["Bonn"]]
    assert page.row_numbers == [4]
