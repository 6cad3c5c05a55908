"""SQL and ad-hoc filter API endpoints.

SQL runs against the table ``data`` holding every feature of the loaded
dataset plus a ``_rowid`` column. A bare predicate is accepted as a
shorthand for ``SELECT * FROM data WHERE <predicate>``; full SELECT
statements must keep ``_rowid`` in their output so rows can be matched
back to their geometries.

Example:
    Keep the large cities:
        >>> client.post("/api/dataset/sql", json={"sql": "pop > 1000000"})

    Filter without SQL:
        >>> client.post("/api/dataset/filter", json={"expression": "country == 'DE'"})
"""

from __future__ import annotations

import dataclasses
from typing import Any

import fastapi
import pydantic

from vecgeo.api import errors as api_errors
from vecgeo.core import errors
from vecgeo.services import session as session_service

router = fastapi.APIRouter(prefix="/api/dataset", tags=["query"])


class SqlRequest(pydantic.BaseModel):
    sql: str


class FilterRequest(pydantic.BaseModel):
    expression: str


@router.post("/sql")
async def run_sql(
    request: SqlRequest,
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Replace the displayed data with the result of a SQL query.

    Args:
        request: Body with the SQL statement or predicate.
        session: Active dataset session (injected via FastAPI Depends).

    Returns:
        Matched row count, result columns, discarded rows and the summary.

    Raises:
        HTTPException: 400 for failing SQL or results without _rowid, 404
            for empty results, 409 without a dataset, 503 without engine.
    """
    try:
        result = await session.run_sql(request.sql)
    except errors.VecGeoError as exc:
        raise api_errors.to_http(exc) from exc

    return {
        "matched": len(result.row_ids),
        "columns": result.columns,
        "discarded": result.discarded,
        "summary": dataclasses.asdict(session.summary()),
    }


@router.post("/filter")
async def run_filter(
    request: FilterRequest,
    session: session_service.DatasetSession = fastapi.Depends(  # noqa: B008
        session_service.get_session
    ),
) -> dict[str, Any]:
    """Replace the displayed data with the records matching a filter.

    Raises:
        HTTPException: 400 for malformed expressions, 409 without dataset.
    """
    try:
        filtered = await session.run_filter(request.expression)
    except errors.VecGeoError as exc:
        raise api_errors.to_http(exc) from exc

    return {
        "matched": len(filtered["features"]),
        "summary": dataclasses.asdict(session.summary()),
    }
