"""Persistence port for tools and policy rules."""

from __future__ import annotations

from typing import Protocol
from uuid import UUID

from warden.policies.schemas import ToolInvocationPolicyRecord, ToolRecord, TrustedDataPolicyRecord
from warden.providers import ToolDefinition


class PolicyStore(Protocol):
    """Read access to tools and rules, plus tool auto-discovery.

    Rule listings are returned in creation order; first-match-wins
    evaluation depends on it.
    """

    async def resolve_tool(self, agent_id: str | None, name: str) -> ToolRecord | None:
        """Agent-scoped tool by name, falling back to a global tool."""
        ...

    async def trusted_data_policies(self, tool_id: UUID) -> list[TrustedDataPolicyRecord]: ...

    async def tool_invocation_policies(self, tool_id: UUID) -> list[ToolInvocationPolicyRecord]: ...

    async def persist_tools(self, agent_id: str | None, tools: list[ToolDefinition]) -> int:
        """Store tools not yet known for the agent; return how many were added."""
        ...
