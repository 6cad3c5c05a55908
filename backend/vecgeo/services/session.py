"""Dataset lifecycle: original vs. current data, limits, filters and resets.

A DatasetSession owns the single active dataset pair. ``original`` is the
full dataset after CRS correction and is replaced only when a new dataset
is loaded. ``current`` is what the renderer shows; it is always derived
from ``original`` by the feature limit, an ad-hoc filter or a SQL query,
and ``current_row_ids`` records the position in ``original`` of every
current record.

The SQL table is always registered from the unlimited ``original`` so
queries can reach rows beyond the display cap. A failed load, query or
filter leaves the session exactly as it was.

Example:
    Load a file, filter it with SQL and go back to the full view:
        >>> from vecgeo.services.session import get_session
        >>> session = get_session()
        >>> await session.load_file(Path("cities.geojson"))
        >>> await session.run_sql("pop > 1000000")
        >>> await session.reset()
"""

from __future__ import annotations

import asyncio
import datetime
import functools
import json
import logging
from typing import TYPE_CHECKING

from vecgeo.core import config, errors
from vecgeo.db import database
from vecgeo.db import models as db_models
from vecgeo.services import columns, crs, filters, parsers, render, styling

if TYPE_CHECKING:
    import pathlib

    import httpx

    from vecgeo.db.models import FeatureCollection

logger = logging.getLogger(__name__)

EXPORT_MEDIA_TYPE = "application/geo+json"


def limit_features(
    collection: FeatureCollection, feature_limit: int
) -> tuple[FeatureCollection, list[int]]:
    """Apply the feature cap as a prefix slice of collection.

    Returns:
        Tuple of (limited collection, row ids of the kept features). The
        input collection itself is returned when no cap applies.
    """
    total = len(collection["features"])
    if feature_limit > 0 and total > feature_limit:
        limited: FeatureCollection = {
            "type": "FeatureCollection",
            "features": collection["features"][:feature_limit],
        }
        return limited, list(range(feature_limit))
    return collection, list(range(total))


class DatasetSession:
    """Active dataset pair and the operations that move between states.

    Attributes:
        settings: Application settings.
        store: SQL engine holding the registered original dataset.
        renderer: Chunked renderer drawing the current dataset.
        original: Full dataset after CRS correction, or None.
        current: Displayed dataset, or None.
        current_row_ids: Position in original of each current record.
        feature_limit: Display cap (0 = unlimited).
        active_filter: Filter that produced current.
        classification: Column classification of current.
        current_column: Column used for colouring.
        colormap: Colormap used for numeric columns.
    """

    def __init__(
        self,
        settings: config.Settings,
        store: database.TabularStoreProtocol,
        renderer: render.ChunkedRenderer,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.renderer = renderer
        self.transport = transport

        self.original: FeatureCollection | None = None
        self.current: FeatureCollection | None = None
        self.current_row_ids: list[int] = []
        self.feature_limit = settings.feature_limit
        self.active_filter = db_models.ActiveFilter()
        self.classification = db_models.ColumnClassification()
        self.current_column: str | None = None
        self.colormap = styling.COLORMAPS[0]
        self.source_name: str | None = None
        self.source_crs: str | None = None
        self.registration: db_models.RegistrationSummary | None = None

    @property
    def loaded(self) -> bool:
        return self.original is not None

    async def ensure_engine(self) -> bool:
        """Start the SQL engine on first use."""
        return await self.store.initialize()

    def _analyze(self) -> None:
        self.classification = columns.analyze_columns(
            self.current or db_models.empty_collection(),
            self.settings.column_sample_size,
        )
        known = self.classification.numeric + self.classification.categorical
        if self.current_column not in known:
            self.current_column = known[0] if known else None

    async def _show(
        self,
        collection: FeatureCollection,
        row_ids: list[int],
        active_filter: db_models.ActiveFilter,
        preserve_view: bool = False,
    ) -> None:
        self.current = collection
        self.current_row_ids = row_ids
        self.active_filter = active_filter
        self._analyze()
        await self.renderer.render(self.current, preserve_view)

    async def load_collection(
        self, collection: FeatureCollection, source_name: str
    ) -> None:
        """Make a decoded collection the active dataset.

        The collection is normalized and CRS-corrected, becomes ``original``,
        is capped into ``current``, registered in the SQL engine in full and
        rendered.

        Args:
            collection: Decoded GeoJSON (Feature or FeatureCollection).
            source_name: File name or URL shown in the status.

        Raises:
            FormatError: If collection is not valid GeoJSON.
        """
        normalized = parsers.normalize_collection(collection)
        resolved, source_crs = crs.resolve(normalized)

        self.original = resolved
        self.source_name = source_name
        self.source_crs = source_crs
        self.current_column = None

        total = len(resolved["features"])
        limited, row_ids = limit_features(resolved, self.feature_limit)
        if len(row_ids) < total:
            logger.info("Limited from %d to %d objects", total, len(row_ids))

        self.current = limited
        self.current_row_ids = row_ids
        self.active_filter = db_models.ActiveFilter()
        self._analyze()

        self.registration = None
        if await self.ensure_engine():
            self.registration = await asyncio.to_thread(
                self.store.register_collection, resolved
            )

        await self.renderer.render(self.current, preserve_view=False)
        if len(row_ids) < total:
            logger.info(
                "Loaded %d objects from %s, displaying %d",
                total,
                source_name,
                len(row_ids),
            )
        else:
            logger.info("Loaded %d objects from %s", total, source_name)

    async def load_file(
        self, path: pathlib.Path, source_name: str | None = None
    ) -> None:
        """Decode a local file and load it.

        Raises:
            FormatError: If the file format is unsupported or invalid.
            EngineUnavailableError: For Parquet input without SQL engine.
        """
        ext = parsers.extension_of(path.name)
        if ext in parsers.PARQUET_EXTENSIONS:
            await self.ensure_engine()
        collection = await asyncio.to_thread(parsers.decode_file, path, self.store)
        await self.load_collection(collection, source_name or path.name)

    async def load_url(self, url: str) -> None:
        """Fetch a remote dataset and load it.

        Raises:
            FormatError: If the URL or payload is invalid.
            NetworkError: If the download fails.
        """
        ext = parsers.extension_of(parsers.validate_url(url).path)
        if ext in parsers.PARQUET_EXTENSIONS:
            await self.ensure_engine()
        collection, name, _size = await parsers.fetch_url(
            url, self.settings, self.store, self.transport
        )
        await self.load_collection(collection, name)

    async def change_limit(self, new_limit: int) -> None:
        """Change the display cap and recompute current from original.

        The SQL table is not re-registered: it already covers every row of
        original.

        Raises:
            ValueError: If new_limit is negative.
        """
        if new_limit < 0:
            raise ValueError("Feature limit must be zero or positive")
        old_limit, self.feature_limit = self.feature_limit, new_limit
        logger.info("Feature limit: %s", new_limit or "no limit")
        if self.original is None or old_limit == new_limit:
            return

        limited, row_ids = limit_features(self.original, new_limit)
        await self._show(limited, row_ids, db_models.ActiveFilter())

    async def run_sql(self, sql_text: str) -> db_models.QueryResult:
        """Replace current with the reconciled result of a SQL query.

        Raises:
            EngineUnavailableError: If the SQL engine is not available.
            QueryError: If the query fails, is empty or lacks _rowid.
        """
        if self.original is None:
            raise errors.NoDatasetError("No data loaded to query.")
        await self.ensure_engine()
        result = await asyncio.to_thread(self.store.run_query, sql_text, self.original)
        await self._show(
            result.collection,
            result.row_ids,
            db_models.ActiveFilter(kind="sql", expression=sql_text),
        )
        return result

    async def run_filter(self, expression: str) -> FeatureCollection:
        """Replace current with the original records matching expression.

        Raises:
            FilterSyntaxError: If expression does not follow the grammar.
        """
        if self.original is None:
            raise errors.NoDatasetError("No data loaded to filter.")
        predicate = filters.parse_filter(expression)
        row_ids = filters.apply_filter(self.original, predicate)
        features = self.original["features"]
        filtered: FeatureCollection = {
            "type": "FeatureCollection",
            "features": [features[i] for i in row_ids],
        }
        logger.info("Filter %r matched %d objects", expression, len(row_ids))
        await self._show(
            filtered,
            row_ids,
            db_models.ActiveFilter(kind="adhoc", expression=expression),
        )
        return filtered

    async def reset(self) -> None:
        """Clear the active filter and show original under the feature cap."""
        if self.original is None:
            return
        limited, row_ids = limit_features(self.original, self.feature_limit)
        await self._show(limited, row_ids, db_models.ActiveFilter())
        logger.info("Filter reset")

    def fit_view(self) -> db_models.BBox | None:
        """Fit the view to the current data without changing it."""
        bounds = self.renderer.sink.bounds()
        if bounds is not None:
            self.renderer.sink.fit_bounds(bounds)
            logger.debug("View reset to %s", bounds)
        return bounds

    async def set_column(self, column: str | None) -> None:
        """Choose the column used for colouring and re-render in place."""
        self.current_column = column or None
        if self.current is not None:
            await self.renderer.render(self.current, preserve_view=True)

    async def cycle_column(self, direction: int = 1) -> str | None:
        known = self.classification.numeric + self.classification.categorical
        if not known:
            return None
        index = known.index(self.current_column) if self.current_column in known else -1
        await self.set_column(known[(index + direction) % len(known)])
        return self.current_column

    async def set_colormap(self, colormap: str) -> None:
        """Choose the colormap for numeric columns.

        Raises:
            ValueError: If colormap is not one of styling.COLORMAPS.
        """
        if colormap not in styling.COLORMAPS:
            raise ValueError(f"Unknown colormap {colormap!r}")
        self.colormap = colormap
        if self.current is not None:
            await self.renderer.render(self.current, preserve_view=True)

    async def cycle_colormap(self) -> str:
        index = styling.COLORMAPS.index(self.colormap)
        await self.set_colormap(styling.COLORMAPS[(index + 1) % len(styling.COLORMAPS)])
        return self.colormap

    def color_scale(self) -> db_models.ColorScale | None:
        if self.current is None:
            return None
        return styling.build_color_scale(
            self.current, self.current_column, self.classification, self.colormap
        )

    def export(self, now: datetime.datetime | None = None) -> db_models.ExportArtifact:
        """Serialize current as an indented GeoJSON download.

        Raises:
            NoDatasetError: If no data is loaded.
        """
        if self.current is None:
            raise errors.NoDatasetError("No data loaded to export.")
        now = now or datetime.datetime.now(datetime.UTC)
        timestamp = now.strftime("%Y-%m-%dT%H-%M-%S")
        filename = f"{self.settings.export_product}-export-{timestamp}.geojson"
        content = json.dumps(self.current, indent=2).encode("utf-8")
        logger.info(
            "Exported %d objects to %s", len(self.current["features"]), filename
        )
        return db_models.ExportArtifact(
            filename=filename, media_type=EXPORT_MEDIA_TYPE, content=content
        )

    def summary(self) -> db_models.DatasetSummary:
        total = len(self.original["features"]) if self.original else 0
        displayed = len(self.current["features"]) if self.current else 0
        return db_models.DatasetSummary(
            loaded=self.loaded,
            source_name=self.source_name,
            source_crs=self.source_crs,
            total_features=total,
            displayed_features=displayed,
            feature_limit=self.feature_limit,
            limited=self.active_filter.kind == "none" and displayed < total,
            active_filter=self.active_filter,
            columns=self.classification,
            current_column=self.current_column,
            colormap=self.colormap,
            sql_available=self.store.available,
        )


@functools.lru_cache
def get_session() -> DatasetSession:
    """Get the process-wide session built from cached settings."""
    settings = config.get_settings()
    renderer = render.ChunkedRenderer(
        render.GeoJSONLayerSink(), settings.render_chunk_size
    )
    return DatasetSession(settings, database.get_tabular_store(settings), renderer)
