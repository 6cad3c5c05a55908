"""Chunked, cancelable rendering of the current dataset.

The renderer hands features to a sink in chunks and yields to the event
loop between chunks so large datasets do not block other requests. Every
call to ChunkedRenderer.render() bumps a generation token; a render that
finds the token changed before drawing a chunk stops silently, leaving the
newer render in charge of the sink.

GeoJSONLayerSink is the in-process sink used by the HTTP API: it keeps the
drawn features, their bounds and the fitted view so clients can fetch what
is on the map.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from vecgeo.db import models as db_models
from vecgeo.services import crs

if TYPE_CHECKING:
    from vecgeo.db.models import BBox, Feature, FeatureCollection

logger = logging.getLogger(__name__)


def compute_bounds(features: Sequence[Feature]) -> BBox | None:
    """Bounding box (minx, miny, maxx, maxy) of all feature coordinates."""
    minx = miny = float("inf")
    maxx = maxy = float("-inf")
    for feature in features:
        for coords in crs.iter_coordinates(feature.get("geometry")):
            x, y = float(coords[0]), float(coords[1])
            minx, maxx = min(minx, x), max(maxx, x)
            miny, maxy = min(miny, y), max(maxy, y)
    if minx == float("inf"):
        return None
    return (minx, miny, maxx, maxy)


class RenderSink(Protocol):
    """Drawing surface for the current dataset."""

    def clear(self) -> None: ...

    def draw(self, features: Sequence[Feature]) -> None: ...

    def finish(self, collection: FeatureCollection, preserve_view: bool) -> None: ...

    def bounds(self) -> BBox | None: ...

    def fit_bounds(self, bounds: BBox) -> None: ...


class GeoJSONLayerSink(RenderSink):
    """Sink that keeps the rendered layer in memory."""

    def __init__(self) -> None:
        self.features: list[Feature] = []
        self.view: BBox | None = None
        self.empty = True
        self._bounds: BBox | None = None

    def clear(self) -> None:
        self.features = []
        self._bounds = None
        self.empty = True

    def draw(self, features: Sequence[Feature]) -> None:
        self.features.extend(features)

    def finish(self, collection: FeatureCollection, preserve_view: bool) -> None:
        self.empty = not self.features
        self._bounds = compute_bounds(self.features)
        if not preserve_view and self._bounds is not None:
            self.fit_bounds(self._bounds)

    def bounds(self) -> BBox | None:
        return self._bounds

    def fit_bounds(self, bounds: BBox) -> None:
        self.view = bounds

    def layer(self) -> FeatureCollection:
        return {"type": "FeatureCollection", "features": list(self.features)}


class ChunkedRenderer:
    """Draws collections into a sink chunk by chunk.

    Attributes:
        sink: Drawing surface.
        chunk_size: Features drawn between two yields to the event loop.
        generation: Token of the most recent render.
    """

    def __init__(self, sink: RenderSink, chunk_size: int = 1000) -> None:
        self.sink = sink
        self.chunk_size = max(1, chunk_size)
        self.generation = 0

    async def render(
        self,
        collection: FeatureCollection | None,
        preserve_view: bool = False,
    ) -> bool:
        """Render a collection, superseding any render in progress.

        Args:
            collection: Dataset to draw; None or empty clears the sink.
            preserve_view: Keep the current view instead of fitting bounds.

        Returns:
            True if the render completed, False if a newer render
            superseded it.
        """
        self.generation += 1
        token = self.generation
        self.sink.clear()

        if collection is None:
            collection = db_models.empty_collection()
        features = collection["features"]
        if not features:
            logger.warning("No features to render")
            self.sink.finish(collection, preserve_view)
            return True

        for start in range(0, len(features), self.chunk_size):
            if token != self.generation:
                logger.debug("Render %d superseded by %d", token, self.generation)
                return False
            self.sink.draw(features[start : start + self.chunk_size])
            await asyncio.sleep(0)

        if token != self.generation:
            return False
        self.sink.finish(collection, preserve_view)
        return True
