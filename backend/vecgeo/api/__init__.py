"""API router subpackage for the vector data viewer backend.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - ingest: Endpoints for uploading files and loading remote URLs.
    - dataset: Endpoints for the summary, displayed features, feature
      limit, resets, styling, attribute table and export.
    - query: Endpoints for SQL queries and ad-hoc filters.
    - errors: Translation of pipeline errors into HTTP responses.
"""
