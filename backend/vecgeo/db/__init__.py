"""Embedded SQL engine and data models.

This subpackage holds the DuckDB-backed tabular store that registers the
active dataset as the ``data`` table, and the GeoJSON-shaped types and
dataclasses passed between the pipeline components.

Example:
    Use in a service or FastAPI dependency:
        >>> from vecgeo.db.database import get_tabular_store
        >>> store = get_tabular_store(settings)
"""
