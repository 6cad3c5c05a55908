"""Colour scale summaries for the legend and data-driven styling."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from vecgeo.db import models as db_models

if TYPE_CHECKING:
    from vecgeo.db.models import FeatureCollection

COLORMAPS = ("viridis", "plasma", "turbo", "cividis", "spectral", "blues", "reds")
MAX_CATEGORIES = 20
LOW_PERCENTILE = 0.05
HIGH_PERCENTILE = 0.95


def _as_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def build_color_scale(
    collection: FeatureCollection,
    column: str | None,
    classification: db_models.ColumnClassification,
    colormap: str = COLORMAPS[0],
) -> db_models.ColorScale | None:
    """Summarize how features are coloured by column.

    Numeric columns use a continuous ramp clamped to the 5th-95th
    percentile of their values. Other columns map up to MAX_CATEGORIES
    distinct values to categorical colours in order of appearance.

    Returns:
        ColorScale, or None if no column is selected or it has no values.
    """
    if not column:
        return None
    values = [
        (feature.get("properties") or {}).get(column)
        for feature in collection["features"]
    ]
    values = [v for v in values if v is not None]
    if not values:
        return None

    if column in classification.numeric:
        numbers = sorted(n for n in map(_as_float, values) if n is not None)
        if not numbers:
            return None
        last = len(numbers) - 1
        low = numbers[min(int(len(numbers) * LOW_PERCENTILE), last)]
        high = numbers[min(int(len(numbers) * HIGH_PERCENTILE), last)]
        return db_models.ColorScale(
            column=column, kind="numeric", colormap=colormap, domain=(low, high)
        )

    categories: dict[object, None] = {}
    for value in values:
        if isinstance(value, dict | list):
            continue
        categories.setdefault(value)
        if len(categories) == MAX_CATEGORIES:
            break
    return db_models.ColorScale(
        column=column,
        kind="categorical",
        colormap=colormap,
        categories=list(categories),  # type: ignore[arg-type]
    )
