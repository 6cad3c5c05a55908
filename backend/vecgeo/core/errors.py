"""Error taxonomy for the ingestion, CRS and query pipeline.

Every failure the pipeline reports derives from VecGeoError so the API layer
can translate it into an HTTP response in one place. Some errors are only
ever raised and handled internally (CRSError, RegistrationError): the
pipeline recovers from them locally and they never reach a caller.

Example:
    Handle a user query failure:
        >>> from vecgeo.core import errors
        >>> try:
        ...     await session.run_sql("SELEC * FROM data")
        ... except errors.QueryError as e:
        ...     print(f"SQL Error: {e}")
"""


class VecGeoError(Exception):
    """Base class for all pipeline errors."""


class FormatError(VecGeoError):
    """Input is unsupported or cannot be parsed.

    The message carries a remediation hint where one exists, e.g. which
    desktop tool converts a GeoPackage into GeoJSON.
    """


class NetworkError(VecGeoError):
    """A remote dataset could not be fetched."""


class CRSError(VecGeoError):
    """A coordinate reference system is unknown or unusable."""


class EngineUnavailableError(VecGeoError):
    """The SQL engine failed to start from every configured source."""


class RegistrationError(VecGeoError):
    """A collection could not be registered as a queryable table."""


class QueryError(VecGeoError):
    """A SQL query or filter could not produce a dataset.

    Raised for malformed SQL (with the engine's message verbatim), empty
    results and results that cannot be mapped back to geometries.
    """


class EmptyResultError(QueryError):
    """A query ran successfully but returned no rows."""


class RowIdentityError(QueryError):
    """No result row carried a usable _rowid."""


class FilterSyntaxError(QueryError):
    """An ad-hoc filter expression does not follow the filter grammar."""


class NoDatasetError(VecGeoError):
    """An operation needs a loaded dataset and none is active."""
