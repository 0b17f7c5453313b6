"""Shared utility functions for Warden."""

from __future__ import annotations

import json
import re
from typing import Any

PREVIEW_MAX_CHARS = 100

_ANGLE_BRACKETS = re.compile(r"[<>]")
_TEMPLATE_MARKER = re.compile(r"\{\{.*?\}\}")
_INTERPOLATION_MARKER = re.compile(r"\$\{.*?\}")


def strip_env_var_quotes(value: str) -> str:
    """Strip matching surrounding quotes from an environment variable value.

    Handles both double and single quotes, and only strips when the first and
    last characters are the same quote. Nested pairs are removed too, so
    applying it twice gives the same result as applying it once.

    >>> strip_env_var_quotes('"http://grafana:80"')
    'http://grafana:80'
    >>> strip_env_var_quotes("\\"mismatched'")
    '"mismatched\\''
    """
    while len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return value


def create_safe_preview(content: Any) -> str:
    """Render content as a short preview that cannot carry markup or templates.

    Strips ``<``/``>``, replaces ``{{...}}`` with ``[template]`` and ``${...}``
    with ``[variable]``, then truncates to 100 characters with a ``...`` suffix.
    """
    if not content:
        return "[empty]"

    raw = content if isinstance(content, str) else json.dumps(content, default=str)
    sanitized = _ANGLE_BRACKETS.sub("", raw)
    sanitized = _TEMPLATE_MARKER.sub("[template]", sanitized)
    sanitized = _INTERPOLATION_MARKER.sub("[variable]", sanitized)
    if len(sanitized) > PREVIEW_MAX_CHARS:
        return sanitized[:PREVIEW_MAX_CHARS] + "..."
    return sanitized
