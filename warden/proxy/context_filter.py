"""Removes blocked tool results from the outbound message list."""

from __future__ import annotations

from typing import Any

from warden.config import ProviderDialect


def filter_blocked(
    dialect: ProviderDialect,
    messages: list[dict[str, Any]],
    blocked_ids: set[str],
) -> list[dict[str, Any]]:
    """Drop tool results whose call id is blocked.

    Returns ``messages`` itself when nothing is blocked. For Anthropic,
    ``tool_result`` blocks are removed from user messages, and a user
    message left with no content is dropped.
    """
    if not blocked_ids:
        return messages

    if dialect == "openai":
        return [m for m in messages if not (m.get("role") == "tool" and m.get("tool_call_id") in blocked_ids)]

    filtered: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if message.get("role") != "user" or not isinstance(content, list):
            filtered.append(message)
            continue
        kept = [
            block
            for block in content
            if not (
                isinstance(block, dict)
                and block.get("type") == "tool_result"
                and block.get("tool_use_id") in blocked_ids
            )
        ]
        if len(kept) == len(content):
            filtered.append(message)
        elif kept:
            filtered.append({**message, "content": kept})
    return filtered
