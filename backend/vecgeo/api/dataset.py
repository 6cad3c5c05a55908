"""Active dataset API endpoints.

This module exposes the state of the loaded dataset and the operations that
change what is displayed without loading new data: the feature limit, the
filter reset, the view reset, colour styling and GeoJSON export. It also
serves the displayed features themselves and a paged attribute table.

Example:
    Show everything and download it:
        >>> client.put("/api/dataset/limit", json={"limit": 0})
        >>> response = client.get("/api/dataset/export")
        >>> response.headers["content-disposition"]
        'attachment; filename="vecgeo-viewer-export-2026-01-01T12-00-00.geojson"'
"""

from __future__ import annotations

import dataclasses
from typing import Any, Literal

import fastapi
import pydantic

from vecgeo.api import errors as api_errors
from vecgeo.core import errors
from vecgeo.db import models as db_models
from vecgeo.services import session as session_service
from vecgeo.services import table

router = fastapi.APIRouter(prefix="/api/dataset", tags=["dataset"])


class LimitRequest(pydantic.BaseModel):
    limit: int


class StyleRequest(pydantic.BaseModel):
    column: str | None = None
    colormap: str | None = None
    cycle: Literal["column", "colormap"] | None = None


def _style(session: session_service.DatasetSession) -> dict[str, Any]:
    scale = session.color_scale()
    return {
        "column": session.current_column,
        "colormap": session.colormap,
        "scale": dataclasses.asdict(scale) if scale is not None else None,
    }


@router.get("")
async def get_summary(
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Describe the active dataset.

    Returns:
        Source, CRS, total and displayed counts, limit status, active
        filter, classified columns, styling and SQL engine availability.
    """
    return dataclasses.asdict(session.summary())


@router.get("/features")
async def get_features(
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Return the displayed dataset as a GeoJSON FeatureCollection."""
    return dict(session.current or db_models.empty_collection())


@router.put("/limit")
async def set_limit(
    request: LimitRequest,
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Change the feature limit (0 shows every feature).

    Raises:
        HTTPException: 400 if the limit is negative.
    """
    try:
        await session.change_limit(request.limit)
    except ValueError as exc:
        raise api_errors.to_http(exc) from exc

    return dataclasses.asdict(session.summary())


@router.post("/reset")
async def reset_filter(
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Clear the active filter and show the dataset under the limit."""
    await session.reset()
    return dataclasses.asdict(session.summary())


@router.post("/fit")
async def fit_view(
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Fit the view to the displayed features.

    Returns:
        Dictionary with the fitted bounds, or None when nothing is shown.
    """
    bounds = session.fit_view()
    return {"bounds": list(bounds) if bounds is not None else None}


@router.get("/export")
async def export_dataset(
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> fastapi.Response:
    """Download the displayed dataset as a GeoJSON file.

    Raises:
        HTTPException: 409 if no dataset is loaded.
    """
    try:
        artifact = session.export()
    except errors.VecGeoError as exc:
        raise api_errors.to_http(exc) from exc

    return fastapi.Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"'
        },
    )


@router.get("/table")
async def get_table(
    page: int = 1,
    page_size: int = 50,
    sort_column: str | None = None,
    sort_direction: table.SortDirection = "asc",
    search: str = "",
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Return one page of the attribute table of the displayed dataset."""
    collection = session.current or db_models.empty_collection()
    columns = session.classification.columns
    query = table.TableQuery(
        page=page,
        page_size=page_size,
        sort_column=sort_column,
        sort_direction=sort_direction,
        search=search,
    )
    return dataclasses.asdict(table.build_table_page(collection, columns, query))


@router.get("/style")
async def get_style(
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Return the colour-by column, colormap and legend scale."""
    return _style(session)


@router.put("/style")
async def update_style(
    request: StyleRequest,
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Change the colour-by column or colormap, or cycle to the next one.

    Raises:
        HTTPException: 400 for unknown colormaps.
    """
    try:
        if request.cycle == "column":
            await session.cycle_column()
        elif request.cycle == "colormap":
            await session.cycle_colormap()
        if request.column is not None:
            await session.set_column(request.column)
        if request.colormap is not None:
            await session.set_colormap(request.colormap)
    except ValueError as exc:
        raise api_errors.to_http(exc) from exc

    return _style(session)
