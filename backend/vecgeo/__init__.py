"""Package initializer for the VecGeo vector data viewer backend.

This package loads vector datasets (GeoJSON, zipped shapefiles, Parquet and
GeoParquet, local or remote), corrects them to EPSG:4326, registers every
feature in an embedded DuckDB table and lets clients narrow what is
displayed with SQL or simple filters while keeping the original geometries.

- Detects the source CRS from embedded metadata or coordinate ranges
- Registers the full dataset in DuckDB behind a synthetic _rowid
- Maps SQL results back to geometries through _rowid alone
- Caps displayed features and renders them in cancelable chunks
"""
