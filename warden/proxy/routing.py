"""Inbound path handling: routing id extraction and conversation ids."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


@dataclass(frozen=True)
class RoutedPath:
    """Upstream path with the routing id consumed."""

    routing_id: str | None
    upstream_path: str


def split_routing_id(path: str) -> RoutedPath:
    """Strip a leading UUID segment from a provider sub-path.

    ``44f56e01-7167-42c1-88ee-64b566fbc34d/models`` -> routing id plus
    ``models``. Paths without one are returned unchanged.
    """
    head, _, rest = path.lstrip("/").partition("/")
    if _UUID_RE.match(head):
        return RoutedPath(routing_id=head.lower(), upstream_path=rest)
    return RoutedPath(routing_id=None, upstream_path=path.lstrip("/"))


def derive_conversation_id(
    routing_id: str | None, messages: list[dict[str, Any]], system: Any = None
) -> str:
    """Stable id for clients that do not send a conversation header.

    The opening of a conversation never changes as it grows. It is hashed
    through the first user message, since leading system prompts are
    shared by every conversation of an agent. Scoped by routing id.
    """
    opening: list[dict[str, Any]] = []
    for message in messages:
        opening.append(message)
        if message.get("role") == "user":
            break
    digest = hashlib.sha256()
    digest.update((routing_id or "-").encode())
    digest.update(json.dumps({"system": system, "opening": opening}, sort_keys=True, default=str).encode())
    return f"conv-{digest.hexdigest()[:32]}"
