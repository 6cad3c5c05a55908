"""Attribute classification for colour scales and query controls."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from vecgeo.db import models as db_models

if TYPE_CHECKING:
    from vecgeo.db.models import FeatureCollection

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 100


def is_finite_number(value: object) -> bool:
    """Return True for finite ints and floats (booleans excluded)."""
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def analyze_columns(
    collection: FeatureCollection,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> db_models.ColumnClassification:
    """Classify the attributes of the first sample_size records.

    A key is numeric if any sampled value is a finite number, categorical
    if any sampled value is a string or boolean and it is not numeric.
    Null values only contribute the key to the list of all columns.
    Lists keep the order in which keys are first seen.

    Args:
        collection: Dataset to sample, normally the current dataset.
        sample_size: Number of leading records to inspect.

    Returns:
        ColumnClassification with all, numeric and categorical columns.
    """
    columns: dict[str, None] = {}
    numeric: dict[str, None] = {}
    categorical: dict[str, None] = {}

    for feature in collection["features"][:sample_size]:
        properties = feature.get("properties")
        if not properties:
            continue
        for key, value in properties.items():
            columns.setdefault(key)
            if value is None:
                continue
            if is_finite_number(value):
                numeric.setdefault(key)
            elif isinstance(value, str | bool):
                categorical.setdefault(key)

    classification = db_models.ColumnClassification(
        columns=list(columns),
        numeric=list(numeric),
        categorical=[key for key in categorical if key not in numeric],
    )
    logger.debug(
        "Found %d numeric, %d categorical columns",
        len(classification.numeric),
        len(classification.categorical),
    )
    return classification
