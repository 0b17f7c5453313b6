"""Comparison operators shared by trusted-data and tool-invocation rules.

Rule values are stored as text. The observed side may be any JSON value; it
is compared in its textual form except for the numeric operators.
"""

from __future__ import annotations

import json
import re
from typing import Any

from warden.errors import PolicyEvaluationError

MISSING = object()

_INDEX_RE = re.compile(r"\[(\d+)\]")


def as_text(value: Any) -> str:
    """Textual form used for string comparisons."""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _as_number(value: Any, side: str) -> float:
    if isinstance(value, bool):
        raise PolicyEvaluationError(f"Cannot compare boolean {side} numerically")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise PolicyEvaluationError(f"Non-numeric {side}: {value!r}") from e


def _contains(actual: Any, expected: str) -> bool:
    if isinstance(actual, list):
        return any(as_text(item) == expected for item in actual)
    return expected in as_text(actual)


def apply_operator(operator: str, actual: Any, expected: str) -> bool:
    """Evaluate ``actual <operator> expected``.

    Raises PolicyEvaluationError for unknown operators, invalid regexes and
    non-numeric operands to numeric comparisons.
    """
    if operator == "equal":
        return as_text(actual) == expected
    if operator == "not_equal":
        return as_text(actual) != expected
    if operator == "contains":
        return _contains(actual, expected)
    if operator == "not_contains":
        return not _contains(actual, expected)
    if operator == "starts_with":
        return as_text(actual).startswith(expected)
    if operator == "ends_with":
        return as_text(actual).endswith(expected)
    if operator == "matches_regex":
        try:
            return re.search(expected, as_text(actual)) is not None
        except re.error as e:
            raise PolicyEvaluationError(f"Invalid regex {expected!r}: {e}") from e
    if operator == "greater_than":
        return _as_number(actual, "value") > _as_number(expected, "rule value")
    if operator == "less_than":
        return _as_number(actual, "value") < _as_number(expected, "rule value")
    raise PolicyEvaluationError(f"Unknown operator: {operator!r}")


def resolve_path(data: Any, path: str) -> Any:
    """Extract the value at a dot-path such as ``items.0.name`` or ``items[0].name``.

    Returns MISSING when any segment is absent. An empty path selects the
    whole document.
    """
    path = _INDEX_RE.sub(r".\1", path).strip(".")
    if not path:
        return data

    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list):
            if not segment.isdigit() or int(segment) >= len(current):
                return MISSING
            current = current[int(segment)]
        else:
            return MISSING
    return current
