"""Single-predicate attribute filters evaluated without the SQL engine.

Grammar::

    <column> <op> <value>

where ``op`` is one of ``== != > < >= <=``. A value wrapped in single or
double quotes is a string literal, a numeric-looking value is a float, and
bare ``true``, ``false`` and ``null`` are the matching literals. Anything
else is taken as an unquoted string. Ordering operators coerce the property
to a float first; records whose property cannot be coerced do not match.

Example:
    >>> from vecgeo.services import filters
    >>> predicate = filters.parse_filter("pop > 1000000")
    >>> row_ids = filters.apply_filter(collection, predicate)
"""

from __future__ import annotations

import dataclasses
import operator
import re
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Literal

from vecgeo.core import errors

if TYPE_CHECKING:
    from vecgeo.db.models import Feature, FeatureCollection, Scalar

Operator = Literal["==", "!=", ">", "<", ">=", "<="]

GRAMMAR = "<column> <op> <value> with op one of ==, !=, >, <, >=, <="

_EXPRESSION = re.compile(
    r"""^\s*
    (?P<column>"[^"]+"|[^\s=!<>]+)
    \s*(?P<op>==|!=|>=|<=|>|<)\s*
    (?P<value>.+?)
    \s*$""",
    re.VERBOSE,
)
_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_LITERALS: dict[str, Scalar] = {"true": True, "false": False, "null": None}

_ORDERING: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}


@dataclasses.dataclass(frozen=True)
class FilterPredicate:
    column: str
    op: Operator
    value: Scalar


def _parse_value(raw: str) -> Scalar:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "'\"":
        return raw[1:-1]
    if _NUMBER.match(raw):
        return float(raw)
    if raw.lower() in _LITERALS:
        return _LITERALS[raw.lower()]
    return raw


def parse_filter(expression: str) -> FilterPredicate:
    """Parse an ad-hoc filter expression.

    Raises:
        FilterSyntaxError: If the expression does not follow the grammar,
            or an ordering operator is used with a non-numeric value.
    """
    match = _EXPRESSION.match(expression or "")
    if not match:
        raise errors.FilterSyntaxError(
            f"Invalid filter {expression!r}. Expected {GRAMMAR}."
        )

    column = match.group("column").strip('"')
    op: Operator = match.group("op")  # type: ignore[assignment]
    value = _parse_value(match.group("value"))

    if op in _ORDERING and not isinstance(value, float):
        raise errors.FilterSyntaxError(
            f"Operator {op} needs a numeric value, got {match.group('value')!r}."
            f" Expected {GRAMMAR}."
        )
    return FilterPredicate(column=column, op=op, value=value)


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equals(prop: Any, value: Scalar) -> bool:
    if value is None or isinstance(value, bool):
        return prop is value
    if isinstance(value, float):
        number = _to_float(prop)
        return number is not None and number == value
    if prop is None:
        return False
    return str(prop) == value


def matches(feature: Feature, predicate: FilterPredicate) -> bool:
    """Return True if the feature satisfies the predicate."""
    prop = (feature.get("properties") or {}).get(predicate.column)
    if predicate.op == "==":
        return _equals(prop, predicate.value)
    if predicate.op == "!=":
        return not _equals(prop, predicate.value)

    number = _to_float(prop)
    if number is None:
        return False
    return _ORDERING[predicate.op](number, predicate.value)  # type: ignore[arg-type]


def apply_filter(
    collection: FeatureCollection,
    predicate: FilterPredicate,
) -> list[int]:
    """Return the positions of the records matching predicate, in order."""
    return [
        index
        for index, feature in enumerate(collection["features"])
        if matches(feature, predicate)
    ]
