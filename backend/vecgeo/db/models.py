"""Data models for datasets, SQL schemas and query results.

This module defines the core data structures passed between the pipeline
components. Geometry records and collections are GeoJSON-shaped dictionaries
described by TypedDicts so they serialize without conversion; everything
derived from them (schemas, classifications, query results, summaries) is a
dataclass.

Example:
    A one-feature collection in the canonical geographic frame:
        >>> from vecgeo.db.models import FeatureCollection
        >>> collection: FeatureCollection = {
        ...     "type": "FeatureCollection",
        ...     "features": [
        ...         {
        ...             "type": "Feature",
        ...             "properties": {"pop": 1200000, "country": "FR"},
        ...             "geometry": {"type": "Point", "coordinates": [2.35, 48.85]},
        ...         }
        ...     ],
        ... }
"""

from __future__ import annotations

import dataclasses
from typing import Any, Literal, NotRequired, TypedDict

BBox = tuple[float, float, float, float]
Scalar = float | int | str | bool | None
SqlType = Literal["DOUBLE", "BOOLEAN", "VARCHAR"]
FilterKind = Literal["none", "adhoc", "sql"]

CANONICAL_CRS = "EPSG:4326"
ROWID_COLUMN = "_rowid"
TABLE_NAME = "data"


class Geometry(TypedDict):
    type: str
    coordinates: NotRequired[Any]
    geometries: NotRequired[list[Geometry]]


class Feature(TypedDict):
    type: Literal["Feature"]
    properties: dict[str, Any] | None
    geometry: Geometry | None


class FeatureCollection(TypedDict):
    type: Literal["FeatureCollection"]
    features: list[Feature]
    crs: NotRequired[dict[str, Any]]


def empty_collection() -> FeatureCollection:
    return {"type": "FeatureCollection", "features": []}


@dataclasses.dataclass(frozen=True)
class ColumnSchema:
    """Inferred SQL column for one property key.

    Attributes:
        name: Column name, unique ignoring case. Equal to the property key
            unless that key clashes with an earlier one.
        sql_type: DOUBLE, BOOLEAN or VARCHAR.
        key: Property key the column is filled from.
    """

    name: str
    sql_type: SqlType
    key: str = ""

    @property
    def source_key(self) -> str:
        return self.key or self.name


@dataclasses.dataclass
class RegistrationSummary:
    """Outcome of registering a collection in the SQL engine.

    Attributes:
        columns: Inferred schema, excluding the _rowid column.
        rows_expected: Number of features offered for registration.
        rows_inserted: Number of rows that made it into the table.
        rows_skipped: Rows dropped after failing a one-row insert.
        consistent: Whether the post-load sanity check passed.
    """

    columns: list[ColumnSchema] = dataclasses.field(default_factory=list)
    rows_expected: int = 0
    rows_inserted: int = 0
    rows_skipped: int = 0
    consistent: bool = True


@dataclasses.dataclass
class QueryResult:
    """SQL result set reconciled back into geometry records.

    Attributes:
        collection: Records built from the original geometries and the
            result row properties, in result order.
        row_ids: _rowid of each record in collection.
        columns: Result columns other than _rowid.
        discarded: Result rows whose _rowid was missing or out of range.
    """

    collection: FeatureCollection
    row_ids: list[int]
    columns: list[str]
    discarded: int = 0


@dataclasses.dataclass
class ColumnClassification:
    """Attribute classification sampled from the current dataset."""

    columns: list[str] = dataclasses.field(default_factory=list)
    numeric: list[str] = dataclasses.field(default_factory=list)
    categorical: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class ActiveFilter:
    kind: FilterKind = "none"
    expression: str | None = None


@dataclasses.dataclass
class ColorScale:
    """Colour mapping summary for the legend.

    Attributes:
        column: Column being coloured.
        kind: "numeric" for a continuous ramp, "categorical" otherwise.
        colormap: Colormap name for numeric scales.
        domain: (low, high) clamp values for numeric scales.
        categories: Distinct values for categorical scales.
    """

    column: str
    kind: Literal["numeric", "categorical"]
    colormap: str
    domain: tuple[float, float] | None = None
    categories: list[Scalar] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class ExportArtifact:
    filename: str
    media_type: str
    content: bytes


@dataclasses.dataclass
class DatasetSummary:
    """Status of the session shown by the status bar and controls."""

    loaded: bool
    source_name: str | None
    source_crs: str | None
    total_features: int
    displayed_features: int
    feature_limit: int
    limited: bool
    active_filter: ActiveFilter
    columns: ColumnClassification
    current_column: str | None
    colormap: str
    sql_available: bool
