"""Dataset loading API endpoints.

This module provides REST API endpoints that make a file or a remote URL
the active dataset. Uploaded files are written to the storage directory
with a size check, decoded according to their extension, corrected to
EPSG:4326 and registered in the SQL engine. Remote URLs are fetched and
dispatched on the extension of their path.

Supported inputs are GeoJSON (.geojson, .json), zipped shapefiles (.zip,
uploads only) and Parquet/GeoParquet (.parquet, .geoparquet).

Example:
    Upload a local file:
        >>> response = client.post(
        ...     "/api/dataset/upload",
        ...     files={"file": ("cities.geojson", open("cities.geojson", "rb"))}
        ... )
        >>> response.json()["total_features"]
        3

    Load a remote GeoJSON file:
        >>> response = client.post(
        ...     "/api/dataset/url",
        ...     json={"url": "https://example.com/data/cities.geojson"}
        ... )
"""

from __future__ import annotations

import dataclasses
import pathlib
import shutil
import tempfile
import uuid
from typing import Any

import fastapi
import pydantic

from vecgeo.api import errors as api_errors
from vecgeo.core import config, errors
from vecgeo.services import session as session_service

router = fastapi.APIRouter(prefix="/api/dataset", tags=["dataset"])


class UrlRequest(pydantic.BaseModel):
    url: str


def _save_upload(
    file: fastapi.UploadFile,
    storage_dir: pathlib.Path,
    max_size: int,
) -> pathlib.Path:
    """Persist an uploaded file to disk with size validation.

    The file keeps its extension, which selects the decoder, behind a
    unique prefix so concurrent uploads of the same name do not collide.

    Args:
        file: FastAPI UploadFile object containing the file data.
        storage_dir: Directory where the file should be saved.
        max_size: Maximum allowed file size in bytes.

    Returns:
        Path to the saved file.

    Raises:
        HTTPException: If the file exceeds the maximum size limit.
    """
    storage_dir.mkdir(parents=True, exist_ok=True)
    name = pathlib.PurePath(file.filename or "upload").name
    target_path = storage_dir / f"{uuid.uuid4().hex}-{name}"
    with tempfile.NamedTemporaryFile(delete=False, dir=storage_dir) as tmp:
        size = 0
        for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
            size += len(chunk)
            if size > max_size:
                tmp.close()
                pathlib.Path(tmp.name).unlink(missing_ok=True)
                raise fastapi.HTTPException(
                    status_code=413,
                    detail="Upload too large",
                )

            tmp.write(chunk)

        tmp.flush()

    shutil.move(tmp.name, target_path)

    return target_path


@router.post("/upload")
async def upload_dataset(
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Upload a file and make it the active dataset.

    The stored copy is removed once the file has been decoded.

    Args:
        file: Uploaded file from multipart form data.
        settings: Application settings (injected via FastAPI Depends).
        session: Active dataset session (injected via FastAPI Depends).

    Returns:
        Dataset summary after loading.

    Raises:
        HTTPException: 413 if the upload is too large, 400 if the format is
            unsupported or invalid, 503 for Parquet without SQL engine.
    """
    saved_path = _save_upload(
        file,
        settings.storage_dir,
        settings.max_upload_size_bytes,
    )
    name = pathlib.PurePath(file.filename or saved_path.name).name
    try:
        await session.load_file(saved_path, source_name=name)
    except (errors.VecGeoError, ValueError) as exc:
        raise api_errors.to_http(exc) from exc
    finally:
        saved_path.unlink(missing_ok=True)

    return dataclasses.asdict(session.summary())


@router.post("/url")
async def load_dataset_url(
    request: UrlRequest,
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Fetch a remote file and make it the active dataset.

    Args:
        request: Body with the absolute http(s) URL.
        session: Active dataset session (injected via FastAPI Depends).

    Returns:
        Dataset summary after loading.

    Raises:
        HTTPException: 400 for invalid URLs or payloads, 502 if the
            download fails.
    """
    try:
        await session.load_url(request.url)
    except errors.VecGeoError as exc:
        raise api_errors.to_http(exc) from exc

    return dataclasses.asdict(session.summary())
