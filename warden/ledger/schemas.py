"""Pydantic DTOs for ledger inputs and records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, model_validator

InteractionRole = Literal["user", "assistant", "tool"]


class InteractionInput(BaseModel):
    """A message to append to a conversation.

    ``provider`` is the interaction type tag (``openai:chatCompletions``).
    Trust fields only apply to tool results and are fixed at append time.
    """

    provider: str
    role: InteractionRole
    content: dict[str, Any]
    agent_id: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    tainted: bool = False
    taint_reason: str | None = None
    trusted: bool | None = None
    blocked: bool | None = None
    reason: str | None = None

    @model_validator(mode="after")
    def _check_trust_fields(self) -> InteractionInput:
        if self.role != "tool":
            if self.tainted or self.trusted is not None or self.blocked is not None:
                raise ValueError("Trust fields are only valid on tool interactions")
        elif not self.tool_call_id:
            raise ValueError("Tool interactions require tool_call_id")
        if self.tainted and (self.trusted or self.blocked):
            raise ValueError("A tainted result cannot be trusted or blocked")
        return self


class InteractionRecord(InteractionInput):
    """A stored interaction."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: str
    seq: int
    created_at: datetime | None = None
