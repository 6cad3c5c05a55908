"""Format decoders for local files and remote URLs.

Each decoder turns a source into a normalized FeatureCollection; CRS
correction is left to the caller. Formats are dispatched on the file (or
URL path) extension:

- ``.geojson`` / ``.json``: parsed as GeoJSON text,
- ``.zip``: zipped shapefile read with GeoPandas (local files only),
- ``.parquet`` / ``.geoparquet``: scanned by the SQL engine,
- ``.gpkg``, ``.kml``, ``.kmz``, ``.gdb``: rejected with a conversion hint.

Remote URLs with an unknown extension are tried as GeoJSON.

Example:
    Decode an uploaded shapefile:
        >>> from vecgeo.services import parsers
        >>> collection = parsers.decode_file(Path("roads.zip"), store)
"""

from __future__ import annotations

import asyncio
import json
import logging
import pathlib
import tempfile
import urllib.parse
import uuid
import zipfile
from typing import TYPE_CHECKING, Any, cast

import geopandas as gpd
import httpx
import pyogrio.errors

from vecgeo.core import errors
from vecgeo.db.models import CANONICAL_CRS

if TYPE_CHECKING:
    from vecgeo.core import config
    from vecgeo.db.database import TabularStoreProtocol
    from vecgeo.db.models import Feature, FeatureCollection

logger = logging.getLogger(__name__)

GEOJSON_EXTENSIONS = frozenset({"geojson", "json"})
SHAPEFILE_EXTENSIONS = frozenset({"zip"})
PARQUET_EXTENSIONS = frozenset({"parquet", "geoparquet"})

UNSUPPORTED_FORMATS = {
    "gpkg": (
        "GeoPackage (.gpkg) is not yet supported. "
        "Please convert to GeoJSON using QGIS or ogr2ogr."
    ),
    "kml": (
        "KML/KMZ files are not yet supported. "
        "Please convert to GeoJSON using geojson.io or QGIS."
    ),
    "kmz": (
        "KML/KMZ files are not yet supported. "
        "Please convert to GeoJSON using geojson.io or QGIS."
    ),
    "gdb": (
        "FileGDB (.gdb) requires desktop tools. "
        "Please convert to GeoJSON using QGIS or ArcGIS."
    ),
}


def extension_of(name: str) -> str:
    """Return the lower-case extension of a file name or URL path."""
    return pathlib.PurePosixPath(name).suffix.lstrip(".").lower()


def normalize_collection(data: Any) -> FeatureCollection:
    """Normalize decoded GeoJSON into a FeatureCollection.

    A bare Feature becomes a one-element collection.

    Raises:
        FormatError: If data is neither a Feature nor a FeatureCollection,
            or the collection holds something other than Features.
    """
    if not isinstance(data, dict):
        raise errors.FormatError(
            "Invalid GeoJSON: Expected Feature or FeatureCollection"
        )
    kind = data.get("type")
    if kind == "Feature":
        feature = cast("Feature", data)
        return {"type": "FeatureCollection", "features": [feature]}
    if kind != "FeatureCollection":
        raise errors.FormatError(
            "Invalid GeoJSON: Expected Feature or FeatureCollection"
        )

    features = data.get("features")
    if not isinstance(features, list):
        raise errors.FormatError("Invalid GeoJSON: features must be an array")
    for index, feature in enumerate(features):
        if not isinstance(feature, dict) or feature.get("type") != "Feature":
            raise errors.FormatError(
                f"Invalid GeoJSON: member {index} of features is not a Feature"
            )
    return data  # type: ignore[return-value]


def decode_geojson(payload: bytes | str) -> FeatureCollection:
    """Parse GeoJSON text into a normalized FeatureCollection.

    Raises:
        FormatError: If the payload is not valid JSON or not GeoJSON.
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise errors.FormatError(f"Invalid JSON: {exc}") from exc
    return normalize_collection(data)


def decode_shapefile(path: pathlib.Path) -> FeatureCollection:
    """Read a zipped shapefile into a FeatureCollection.

    The archive is extracted to a temporary directory and the first
    ``.shp`` found is read with GeoPandas. Layers with a ``.prj`` are
    reprojected to EPSG:4326.

    Raises:
        FormatError: If the archive is invalid or holds no shapefile.
    """
    with tempfile.TemporaryDirectory() as tmp:
        workdir = pathlib.Path(tmp)
        try:
            with zipfile.ZipFile(path) as archive:
                archive.extractall(workdir)
        except zipfile.BadZipFile as exc:
            raise errors.FormatError(f"Invalid zip archive: {exc}") from exc

        shp_files = sorted(workdir.rglob("*.shp"))
        if not shp_files:
            raise errors.FormatError("No .shp file found in the zip archive")
        if len(shp_files) > 1:
            logger.info(
                "Archive holds %d shapefiles, reading %s",
                len(shp_files),
                shp_files[0].name,
            )

        try:
            frame = gpd.read_file(shp_files[0])
        except (pyogrio.errors.DataSourceError, pyogrio.errors.DataLayerError) as exc:
            raise errors.FormatError(f"Cannot read shapefile: {exc}") from exc

    if frame.crs is not None and not frame.crs.equals(CANONICAL_CRS):
        frame = frame.to_crs(CANONICAL_CRS)
    return normalize_collection(json.loads(frame.to_json(drop_id=True)))


def decode_file(
    path: pathlib.Path,
    store: TabularStoreProtocol,
) -> FeatureCollection:
    """Decode a local file according to its extension.

    Args:
        path: Path to the file on disk.
        store: SQL engine used to scan Parquet files.

    Returns:
        Normalized FeatureCollection (not yet CRS-corrected).

    Raises:
        FormatError: If the format is unsupported or the file is invalid.
        EngineUnavailableError: If a Parquet file arrives while the SQL
            engine is unavailable.
    """
    ext = extension_of(path.name)
    if ext in GEOJSON_EXTENSIONS:
        return decode_geojson(path.read_bytes())
    if ext in SHAPEFILE_EXTENSIONS:
        return decode_shapefile(path)
    if ext in PARQUET_EXTENSIONS:
        return normalize_collection(store.scan_parquet(path))
    if ext in UNSUPPORTED_FORMATS:
        raise errors.FormatError(UNSUPPORTED_FORMATS[ext])
    raise errors.FormatError(
        f"Unsupported file format: .{ext}. "
        "Supported: GeoJSON, Shapefile (Zipped), Parquet."
    )


def validate_url(url: str) -> urllib.parse.SplitResult:
    """Check that url is an absolute http(s) URL.

    Raises:
        FormatError: If the URL is malformed or not http(s).
    """
    parsed = urllib.parse.urlsplit(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise errors.FormatError(
            "Invalid URL. Please enter a valid URL starting with "
            "http:// or https://"
        )
    return parsed


async def fetch_bytes(
    url: str,
    settings: config.Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bytes:
    """Download a remote resource.

    Raises:
        NetworkError: If the server answers with an error status or the
            request cannot be sent.
    """
    async with httpx.AsyncClient(
        transport=transport,
        timeout=settings.fetch_timeout_seconds,
        follow_redirects=True,
    ) as client:
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise errors.NetworkError(
                f"HTTP {status}: {exc.response.reason_phrase}"
            ) from exc
        except httpx.TransportError as exc:
            raise errors.NetworkError(
                "Failed to fetch data. The URL may be blocked or unreachable."
            ) from exc
    return response.content


async def fetch_url(
    url: str,
    settings: config.Settings,
    store: TabularStoreProtocol,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[FeatureCollection, str, int]:
    """Load a dataset from a remote URL.

    The format is chosen from the URL path extension. Parquet files are
    downloaded into the storage directory and scanned by the SQL engine.

    Args:
        url: Absolute http(s) URL.
        settings: Application settings (storage directory, timeout).
        store: SQL engine used to scan Parquet files.
        transport: Optional httpx transport, used by tests.

    Returns:
        Tuple of (collection, display name, payload size in bytes).

    Raises:
        FormatError: If the URL is invalid, points to a zipped shapefile or
            the payload cannot be decoded.
        NetworkError: If the download fails.
    """
    parsed = validate_url(url)
    ext = extension_of(parsed.path)
    name = f"{parsed.hostname}{parsed.path}"

    if ext in SHAPEFILE_EXTENSIONS:
        raise errors.FormatError(
            "Remote Shapefile (.zip) loading is not supported. "
            "Please download the file and upload it locally."
        )

    payload = await fetch_bytes(url, settings, transport)
    if ext in PARQUET_EXTENSIONS:
        settings.storage_dir.mkdir(parents=True, exist_ok=True)
        target = settings.storage_dir / f"{uuid.uuid4().hex}.{ext}"
        target.write_bytes(payload)
        try:
            collection = normalize_collection(
                await asyncio.to_thread(store.scan_parquet, target)
            )
        finally:
            target.unlink(missing_ok=True)
        return collection, name, len(payload)

    if ext not in GEOJSON_EXTENSIONS:
        logger.info("Unknown extension %r, attempting GeoJSON", ext)
    return decode_geojson(payload), name, len(payload)
