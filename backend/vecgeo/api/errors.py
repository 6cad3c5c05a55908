"""Translation of pipeline errors into HTTP responses."""

from __future__ import annotations

import fastapi

from vecgeo.core import errors

# Subclasses before their base classes.
_STATUS_CODES: tuple[tuple[type[Exception], int], ...] = (
    (errors.EmptyResultError, 404),
    (errors.RowIdentityError, 400),
    (errors.FilterSyntaxError, 400),
    (errors.QueryError, 400),
    (errors.FormatError, 400),
    (errors.NetworkError, 502),
    (errors.EngineUnavailableError, 503),
    (errors.NoDatasetError, 409),
    (ValueError, 400),
)


def to_http(exc: Exception) -> fastapi.HTTPException:
    """Map a pipeline error to an HTTPException carrying its message.

    Errors without a mapping become a 500 response.
    """
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return fastapi.HTTPException(status_code=status_code, detail=str(exc))
    return fastapi.HTTPException(status_code=500, detail=str(exc))
