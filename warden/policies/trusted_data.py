"""Trusted-data policy evaluator.

Decides whether a tool result may enter the model context as trusted,
as tainted (untrusted but visible), or not at all (blocked), and records
the verdict on the ledger.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from warden.errors import PolicyEvaluationError
from warden.ledger import InteractionInput, InteractionLedger
from warden.policies.operators import MISSING, apply_operator, resolve_path
from warden.policies.schemas import TrustedDataPolicyRecord, TrustResult
from warden.policies.store import PolicyStore

logger = logging.getLogger(__name__)


def _describe(policy: TrustedDataPolicyRecord) -> str:
    return policy.description or f"{policy.attribute_path} {policy.operator} {policy.value!r}"


class TrustedDataEvaluator:
    """Evaluates tool results against the trusted-data rules of their tool."""

    def __init__(self, policies: PolicyStore, ledger: InteractionLedger) -> None:
        self.policies = policies
        self.ledger = ledger

    async def evaluate(self, agent_id: str | None, tool_name: str | None, tool_result: Any) -> TrustResult:
        """Trust verdict for one parsed tool result.

        Rules run in creation order. The first matching ``block_always`` or
        ``mark_as_untrusted`` rule decides; a matching ``mark_as_trusted``
        rule only supplies the reason when nothing distrusts. Unknown tools
        and results no rule matches are trusted.
        """
        if not tool_name:
            return TrustResult(is_trusted=True, is_blocked=False)

        tool = await self.policies.resolve_tool(agent_id, tool_name)
        if tool is None:
            return TrustResult(is_trusted=True, is_blocked=False)

        trusted_reason: str | None = None
        for policy in await self.policies.trusted_data_policies(tool.id):
            if not self._matches(policy, tool_result):
                continue
            if policy.action == "block_always":
                return TrustResult(
                    is_trusted=False,
                    is_blocked=True,
                    reason=f"Data blocked by policy: {_describe(policy)}",
                )
            if policy.action == "mark_as_untrusted":
                return TrustResult(
                    is_trusted=False,
                    is_blocked=False,
                    reason=f"Data marked untrusted by policy: {_describe(policy)}",
                )
            if trusted_reason is None:
                trusted_reason = f"Data trusted by policy: {_describe(policy)}"

        return TrustResult(is_trusted=True, is_blocked=False, reason=trusted_reason)

    def _matches(self, policy: TrustedDataPolicyRecord, tool_result: Any) -> bool:
        value = resolve_path(tool_result, policy.attribute_path)
        if value is MISSING:
            return False
        try:
            return apply_operator(policy.operator, value, policy.value)
        except PolicyEvaluationError as e:
            logger.warning("Trusted-data policy %s skipped: %s", policy.id, e)
            return False

    async def evaluate_and_record(
        self,
        conversation_id: str,
        agent_id: str | None,
        provider: str,
        message: dict[str, Any],
        tool_call_id: str,
        tool_name: str | None,
        tool_result: Any,
    ) -> tuple[UUID, TrustResult]:
        """Evaluate a tool result and append it to the ledger with its verdict."""
        result = await self.evaluate(agent_id, tool_name, tool_result)
        interaction_id = await self.ledger.append(
            conversation_id,
            InteractionInput(
                provider=provider,
                role="tool",
                content=message,
                agent_id=agent_id,
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                tainted=result.tainted,
                taint_reason=result.reason if result.tainted else None,
                trusted=result.is_trusted,
                blocked=result.is_blocked,
                reason=result.reason,
            ),
        )
        if result.is_blocked:
            logger.info("Blocked tool result %s (%s) in conversation %s", tool_call_id, tool_name, conversation_id)
        elif result.tainted:
            logger.info("Tainted tool result %s (%s) in conversation %s", tool_call_id, tool_name, conversation_id)
        return interaction_id, result
