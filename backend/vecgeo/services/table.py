"""Search, sort and pagination for the attribute table view."""

from __future__ import annotations

import dataclasses
import json
import math
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from vecgeo.db.models import Feature, FeatureCollection

SortDirection = Literal["asc", "desc"]


@dataclasses.dataclass
class TableQuery:
    page: int = 1
    page_size: int = 50
    sort_column: str | None = None
    sort_direction: SortDirection = "asc"
    search: str = ""


@dataclasses.dataclass
class TablePage:
    """One page of attribute rows.

    Attributes:
        columns: Column headers, in display order.
        rows: Cell values per row; nested values are JSON text.
        row_numbers: One-based position of each row in the filtered list.
        total_rows: Rows left after searching.
        total_features: Features in the dataset before searching.
        page: Current page (one-based).
        total_pages: Number of pages for total_rows.
    """

    columns: list[str]
    rows: list[list[Any]]
    row_numbers: list[int]
    total_rows: int
    total_features: int
    page: int
    total_pages: int


def _cell(value: Any) -> Any:
    if isinstance(value, dict | list):
        return json.dumps(value)
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _matches(feature: Feature, term: str) -> bool:
    properties = feature.get("properties") or {}
    return any(
        value is not None and term in str(value).lower()
        for value in properties.values()
    )


def _sort(
    features: list[Feature], column: str, direction: SortDirection
) -> list[Feature]:
    def value(feature: Feature) -> Any:
        return (feature.get("properties") or {}).get(column)

    present = [f for f in features if value(f) is not None]
    missing = [f for f in features if value(f) is None]
    numeric = all(_is_number(value(f)) for f in present)

    def key(feature: Feature) -> Any:
        return value(feature) if numeric else str(value(feature))

    ordered = sorted(present, key=key, reverse=direction == "desc")
    return ordered + missing


def build_table_page(
    collection: FeatureCollection,
    columns: list[str],
    query: TableQuery,
) -> TablePage:
    """Build one page of the attribute table for a collection.

    Searching is case-insensitive across every property value. Sorting
    puts null values last in both directions, compares numerically when
    every value is a number and as text otherwise.
    """
    features = list(collection["features"])
    if query.search:
        term = query.search.lower()
        features = [f for f in features if _matches(f, term)]
    if query.sort_column:
        features = _sort(features, query.sort_column, query.sort_direction)

    page_size = max(1, query.page_size)
    total_rows = len(features)
    total_pages = math.ceil(total_rows / page_size)
    page = min(max(1, query.page), max(1, total_pages))
    start = (page - 1) * page_size
    page_features = features[start : start + page_size]

    return TablePage(
        columns=list(columns),
        rows=[
            [_cell((f.get("properties") or {}).get(col)) for col in columns]
            for f in page_features
        ],
        row_numbers=list(range(start + 1, start + len(page_features) + 1)),
        total_rows=total_rows,
        total_features=len(collection["features"]),
        page=page,
        total_pages=total_pages,
    )
