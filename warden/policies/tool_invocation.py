"""Tool-invocation policy engine: allow or deny a requested tool call."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from warden.errors import PolicyEvaluationError
from warden.policies.operators import apply_operator
from warden.policies.schemas import InvocationDecision, ToolInvocationPolicyRecord
from warden.policies.store import PolicyStore

logger = logging.getLogger(__name__)

_UNTRUSTED_ONLY = ("allow_when_context_is_untrusted", "deny_when_context_is_untrusted")


class ToolInvocationEngine:
    """First matching, applicable rule wins; no applicable rule allows."""

    def __init__(self, policies: PolicyStore) -> None:
        self.policies = policies

    async def evaluate(
        self,
        tool_id: UUID | None,
        arguments: dict[str, Any],
        context_is_untrusted: bool,
    ) -> InvocationDecision:
        if tool_id is None:
            return InvocationDecision(allowed=True)

        for policy in await self.policies.tool_invocation_policies(tool_id):
            if policy.action in _UNTRUSTED_ONLY and not context_is_untrusted:
                continue
            if not self._matches(policy, arguments):
                continue
            return self._decide(policy)

        return InvocationDecision(allowed=True)

    def _matches(self, policy: ToolInvocationPolicyRecord, arguments: dict[str, Any]) -> bool:
        if policy.argument_name not in arguments:
            return False
        try:
            return apply_operator(policy.operator, arguments[policy.argument_name], policy.value)
        except PolicyEvaluationError as e:
            logger.warning("Tool invocation policy %s skipped: %s", policy.id, e)
            return False

    @staticmethod
    def _decide(policy: ToolInvocationPolicyRecord) -> InvocationDecision:
        condition = f"{policy.argument_name} {policy.operator} {policy.value!r}"
        if policy.action in ("allow", "allow_when_context_is_untrusted"):
            return InvocationDecision(allowed=True, matched=True, policy_id=policy.id, reason=policy.reason or "")
        if policy.action == "require_confirmation":
            return InvocationDecision(
                allowed=False,
                matched=True,
                requires_confirmation=True,
                policy_id=policy.id,
                reason=policy.reason or f"Tool call requires user confirmation ({condition})",
            )
        if policy.action == "deny_when_context_is_untrusted":
            default = f"Tool call denied in untrusted context ({condition})"
        else:
            default = f"Tool call denied by policy ({condition})"
        return InvocationDecision(allowed=False, matched=True, policy_id=policy.id, reason=policy.reason or default)
