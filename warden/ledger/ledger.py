"""Interaction ledger: the append-only, per-conversation message history.

Every user message, assistant response and tool result that passes through
the proxy is recorded once, in arrival order, with the trust verdict of
tool results frozen at append time. Reads are always ordered by sequence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol
from uuid import UUID

from warden import providers
from warden.ledger.schemas import InteractionInput, InteractionRecord

logger = logging.getLogger(__name__)


class LedgerStore(Protocol):
    """Persistence port for interactions."""

    async def insert(self, conversation_id: str, interaction: InteractionInput) -> InteractionRecord: ...

    async def list_interactions(self, conversation_id: str, tainted_only: bool = False) -> list[InteractionRecord]: ...

    async def blocked_tool_call_ids(self, conversation_id: str) -> set[str]: ...


class InteractionLedger:
    """Append and query interactions for a conversation."""

    def __init__(self, store: LedgerStore) -> None:
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def sequenced(self, conversation_id: str) -> AsyncIterator[None]:
        """Serialize a batch of appends for one conversation.

        Concurrent requests on the same conversation queue here so their
        appends land in a single, gap-free order. Locks are dropped once
        nobody holds or waits on them.
        """
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._holders[conversation_id] = self._holders.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[conversation_id] -= 1
            if self._holders[conversation_id] == 0:
                del self._holders[conversation_id]
                del self._locks[conversation_id]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, conversation_id: str, interaction: InteractionInput) -> UUID:
        """Record one interaction and return its id."""
        record = await self.store.insert(conversation_id, interaction)
        logger.debug(
            "Recorded %s interaction %s in conversation %s (seq=%d, tainted=%s)",
            interaction.role,
            record.id,
            conversation_id,
            record.seq,
            interaction.tainted,
        )
        return record.id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_by_conversation(self, conversation_id: str) -> list[InteractionRecord]:
        return await self.store.list_interactions(conversation_id)

    async def list_tainted(self, conversation_id: str) -> list[InteractionRecord]:
        return await self.store.list_interactions(conversation_id, tainted_only=True)

    async def blocked_tool_call_ids(self, conversation_id: str) -> set[str]:
        """Tool call ids whose results were blocked by a trusted-data policy."""
        return await self.store.blocked_tool_call_ids(conversation_id)

    async def recorded_tool_call_ids(self, conversation_id: str) -> set[str]:
        """Tool call ids that already have a recorded result."""
        records = await self.store.list_interactions(conversation_id)
        return {r.tool_call_id for r in records if r.role == "tool" and r.tool_call_id}

    async def find_tool_name(self, conversation_id: str, tool_call_id: str) -> str | None:
        """Name of the tool an assistant message invoked with ``tool_call_id``.

        Scans assistant interactions from newest to oldest.
        """
        records = await self.store.list_interactions(conversation_id)
        for record in reversed(records):
            if record.role != "assistant":
                continue
            dialect = providers.dialect_of(record.provider)
            for call in providers.tool_calls_of(dialect, record.content):
                if call.id == tool_call_id:
                    return call.name
        return None

    async def last_user_text(self, conversation_id: str) -> str | None:
        """Text of the most recent user-authored message, if any."""
        records = await self.store.list_interactions(conversation_id)
        for record in reversed(records):
            if record.role != "user":
                continue
            text = providers.message_text(providers.dialect_of(record.provider), record.content)
            if text:
                return text
        return None

    async def last_interaction(self, conversation_id: str) -> InteractionRecord | None:
        records = await self.store.list_interactions(conversation_id)
        return records[-1] if records else None
