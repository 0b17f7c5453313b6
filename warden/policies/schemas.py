"""Pydantic DTOs for tools, policy rules and policy decisions."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

Operator = Literal[
    "equal",
    "not_equal",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "matches_regex",
    "greater_than",
    "less_than",
]
InvocationAction = Literal[
    "allow",
    "deny",
    "allow_when_context_is_untrusted",
    "deny_when_context_is_untrusted",
    "require_confirmation",
]
TrustedDataAction = Literal["block_always", "mark_as_untrusted", "mark_as_trusted"]


# --- Tools ---


class ToolRecord(BaseModel):
    """A tool known to the proxy, scoped to an agent or global."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agent_id: str | None
    name: str
    description: str | None = None
    parameters: dict[str, Any] = {}
    created_at: datetime | None = None


# --- Rules ---


class ToolInvocationPolicyRecord(BaseModel):
    """Rule over one argument of a tool call."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tool_id: UUID
    argument_name: str
    operator: Operator
    value: str
    action: InvocationAction
    reason: str | None = None
    created_at: datetime | None = None


class TrustedDataPolicyRecord(BaseModel):
    """Rule over an attribute of a tool's output."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tool_id: UUID
    description: str | None = None
    attribute_path: str
    operator: Operator
    value: str
    action: TrustedDataAction = "block_always"
    created_at: datetime | None = None


# --- Decisions ---


class TrustResult(BaseModel):
    """Trust verdict for one tool result."""

    is_trusted: bool
    is_blocked: bool
    reason: str | None = None

    @property
    def tainted(self) -> bool:
        return not self.is_trusted and not self.is_blocked


class InvocationDecision(BaseModel):
    """Outcome of checking a tool call against invocation rules.

    ``matched`` is False when no rule applied and the call was allowed by
    default; the router escalates those to the quarantine controller when
    the conversation context is untrusted.
    """

    allowed: bool
    reason: str = ""
    matched: bool = False
    requires_confirmation: bool = False
    policy_id: UUID | None = None
