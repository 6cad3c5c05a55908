"""Coordinate reference system detection and reprojection.

Every dataset is normalized to the canonical geographic frame (EPSG:4326,
longitude/latitude) before it is displayed or queried. Detection looks at
legacy GeoJSON ``crs`` metadata first and falls back to a heuristic on the
first coordinate of the first feature. Reprojection uses a pyproj
Transformer with ``always_xy=True`` so coordinates keep GeoJSON axis order.

If pyproj does not know the detected CRS the collection is returned
untransformed: data shown in the wrong place is preferred to no data.

Example:
    Detect and reproject a Web Mercator collection:
        >>> from vecgeo.services import crs
        >>> source = crs.detect_crs(collection)
        >>> source
        'EPSG:3857'
        >>> wgs84 = crs.transform_collection(collection, source)
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable, Iterator, Sequence
from typing import TYPE_CHECKING, Any

import pyproj
import pyproj.exceptions

from vecgeo.core import errors
from vecgeo.db.models import CANONICAL_CRS

if TYPE_CHECKING:
    from vecgeo.db.models import FeatureCollection, Geometry

logger = logging.getLogger(__name__)

BRITISH_NATIONAL_GRID = "EPSG:27700"
WEB_MERCATOR = "EPSG:3857"
WEB_MERCATOR_MAX_X = 20037509

_EPSG_PATTERN = re.compile(r"EPSG::?(\d+)", re.IGNORECASE)

Transformer = Callable[[float, float], tuple[float, float]]


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _is_coordinate(value: object) -> bool:
    return (
        isinstance(value, list | tuple)
        and len(value) >= 2
        and _is_number(value[0])
        and _is_number(value[1])
    )


def first_coordinate(geometry: Geometry | None) -> Sequence[float] | None:
    """Return the first coordinate tuple of a geometry.

    Drills through nested coordinate arrays (rings, parts) until a numeric
    pair is found. GeometryCollections are searched member by member.

    Args:
        geometry: GeoJSON geometry object, or None.

    Returns:
        The first coordinate as stored in the geometry, or None when the
        geometry is missing or holds no coordinates.
    """
    if not geometry:
        return None
    if geometry.get("type") == "GeometryCollection":
        for member in geometry.get("geometries") or []:
            coords = first_coordinate(member)
            if coords is not None:
                return coords
        return None

    coords = geometry.get("coordinates")
    while isinstance(coords, list | tuple) and coords:
        if _is_coordinate(coords):
            return coords
        coords = coords[0]
    return None


def detect_crs(collection: FeatureCollection) -> str:
    """Detect the CRS of a collection.

    Detection order (first match wins):

    1. Legacy ``crs.properties.name`` metadata. An EPSG code is extracted
       from names such as ``EPSG:27700`` or ``urn:ogc:def:crs:EPSG::3857``;
       CRS84 names map to EPSG:4326.
    2. The first coordinate of the first feature:
       ``|x| <= 180 and |y| <= 90`` is geographic,
       ``0 < x < 700000 and 0 < y < 1300000`` is the British National Grid,
       ``180 < |x| < 20037509`` is Web Mercator.
    3. EPSG:4326.

    Args:
        collection: Normalized feature collection.

    Returns:
        A CRS identifier such as ``"EPSG:4326"``.
    """
    crs_name = (
        ((collection.get("crs") or {}).get("properties") or {}).get("name")
    )
    if isinstance(crs_name, str) and crs_name:
        match = _EPSG_PATTERN.search(crs_name)
        if match:
            return f"EPSG:{match.group(1)}"
        if "CRS84" in crs_name or "4326" in crs_name:
            return CANONICAL_CRS

    features = collection.get("features") or []
    if features:
        coords = first_coordinate(features[0].get("geometry"))
        if coords is not None:
            x, y = float(coords[0]), float(coords[1])
            if abs(x) <= 180 and abs(y) <= 90:
                return CANONICAL_CRS
            if 0 < x < 700000 and 0 < y < 1300000:
                logger.info(
                    "Detected British National Grid (%s) from coordinates",
                    BRITISH_NATIONAL_GRID,
                )
                return BRITISH_NATIONAL_GRID
            if 180 < abs(x) < WEB_MERCATOR_MAX_X:
                return WEB_MERCATOR

    return CANONICAL_CRS


def transform_coordinates(coords: Any, transformer: Transformer) -> Any:
    """Recursively transform a coordinate array of any nesting depth.

    Any sequence whose first two members are numbers is treated as a
    coordinate; a third (z) member is preserved unchanged and further
    members are dropped. Everything else is recursed into.

    Args:
        coords: Coordinates of a Point, LineString, Polygon or Multi* type.
        transformer: Callable mapping (x, y) to the target frame.

    Returns:
        A new coordinate structure made of lists.
    """
    if not isinstance(coords, list | tuple):
        return coords
    if _is_coordinate(coords):
        x, y = transformer(coords[0], coords[1])
        if len(coords) > 2:
            return [x, y, coords[2]]
        return [x, y]
    return [transform_coordinates(c, transformer) for c in coords]


def _transform_geometry(geometry: Geometry, transformer: Transformer) -> bool:
    if geometry.get("type") == "GeometryCollection":
        changed = False
        for member in geometry.get("geometries") or []:
            changed = _transform_geometry(member, transformer) or changed
        return changed
    if geometry.get("coordinates") is None:
        return False
    geometry["coordinates"] = transform_coordinates(
        geometry["coordinates"], transformer
    )
    return True


def build_transformer(source_crs: str) -> Transformer:
    """Create a forward transformation from source_crs to EPSG:4326.

    Raises:
        CRSError: If pyproj cannot resolve the CRS or a transformation.
    """
    try:
        proj = pyproj.Transformer.from_crs(
            source_crs, CANONICAL_CRS, always_xy=True
        )
    except pyproj.exceptions.CRSError as exc:
        raise errors.CRSError(f"Unknown projection {source_crs}: {exc}") from exc
    except pyproj.exceptions.ProjError as exc:
        raise errors.CRSError(f"Cannot use projection {source_crs}: {exc}") from exc

    def forward(x: float, y: float) -> tuple[float, float]:
        lon, lat = proj.transform(x, y)
        return float(lon), float(lat)

    return forward


def transform_collection(
    collection: FeatureCollection,
    source_crs: str,
) -> FeatureCollection:
    """Reproject a collection from source_crs to EPSG:4326.

    Collections already in the canonical frame are returned as-is (same
    object, no clone). Otherwise the collection is deep-copied, its ``crs``
    member removed (GeoJSON defaults to WGS84) and every geometry rewritten.

    Args:
        collection: Normalized feature collection.
        source_crs: CRS identifier, usually from detect_crs().

    Returns:
        The reprojected collection, or the input collection untouched when
        the CRS cannot be used.
    """
    if source_crs == CANONICAL_CRS:
        return collection

    try:
        transformer = build_transformer(source_crs)
    except errors.CRSError as exc:
        logger.warning("%s, displaying data untransformed", exc)
        return collection

    transformed = copy.deepcopy(collection)
    transformed.pop("crs", None)

    count = 0
    for feature in transformed["features"]:
        geometry = feature.get("geometry")
        if geometry and _transform_geometry(geometry, transformer):
            count += 1

    logger.info(
        "Transformed %d features from %s to %s", count, source_crs, CANONICAL_CRS
    )
    return transformed


def resolve(collection: FeatureCollection) -> tuple[FeatureCollection, str]:
    """Detect the CRS of a collection and reproject it to EPSG:4326."""
    source_crs = detect_crs(collection)
    logger.info("Detected source CRS: %s", source_crs)
    return transform_collection(collection, source_crs), source_crs


def iter_coordinates(geometry: Geometry | None) -> Iterator[Sequence[float]]:
    """Yield every coordinate tuple of a geometry."""
    if not geometry:
        return
    if geometry.get("type") == "GeometryCollection":
        for member in geometry.get("geometries") or []:
            yield from iter_coordinates(member)
        return

    stack = [geometry.get("coordinates")]
    while stack:
        coords = stack.pop()
        if _is_coordinate(coords):
            yield coords
        elif isinstance(coords, list | tuple):
            stack.extend(reversed(coords))
