"""Tests for chunked, cancelable rendering into the in-memory sink."""

from __future__ import annotations

import asyncio
from typing import Any

from vecgeo.services import render


def _points(count: int, offset: float = 0) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {"i": i},
                "geometry": {"type": "Point", "coordinates": [i + offset, -i]},
            }
            for i in range(count)
        ],
    }


def test_compute_bounds() -> None:
    """Test bounds over points and empty input."""
    assert render.compute_bounds(_points(3)["features"]) == (0.0, -2.0, 2.0, 0.0)
    assert render.compute_bounds([]) is None


def test_render_draws_every_chunk() -> None:
    """Test that all features are drawn and the view is fitted."""
    sink = render.GeoJSONLayerSink()
    renderer = render.ChunkedRenderer(sink, chunk_size=2)

    assert asyncio.run(renderer.render(_points(5))) is True

    assert len(sink.features) == 5
    assert sink.empty is False
    assert sink.view == (0.0, -4.0, 4.0, 0.0)
    assert sink.layer()["features"] == _points(5)["features"]


def test_render_empty_collection() -> None:
    """Test that empty input clears the sink without failing."""
    sink = render.GeoJSONLayerSink()
    renderer = render.ChunkedRenderer(sink)
    asyncio.run(renderer.render(_points(2)))

    assert asyncio.run(renderer.render(_points(0))) is True
    assert sink.features == []
    assert sink.empty is True
    assert sink.bounds() is None


def test_render_preserves_view() -> None:
    """Test that preserve_view keeps the fitted view."""
    sink = render.GeoJSONLayerSink()
    renderer = render.ChunkedRenderer(sink)
    asyncio.run(renderer.render(_points(2)))
    view = sink.view

    asyncio.run(renderer.render(_points(2, offset=100), preserve_view=True))

    assert sink.view == view
    assert sink.bounds() == (100.0, -1.0, 101.0, 0.0)


def test_newer_render_supersedes_older() -> None:
    """Test that a render in progress stops when a newer one starts."""
    sink = render.GeoJSONLayerSink()
    renderer = render.ChunkedRenderer(sink, chunk_size=2)
    large = _points(10)
    small = _points(1, offset=50)

    async def scenario() -> list[bool]:
        results = await asyncio.gather(renderer.render(large), renderer.render(small))
        return list(results)

    assert asyncio.run(scenario()) == [False, True]
    assert sink.features == small["features"]
    assert sink.view == (50.0, 0.0, 50.0, 0.0)
