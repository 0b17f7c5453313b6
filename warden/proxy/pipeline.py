"""Interception steps for chat requests, independent of HTTP plumbing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from warden import providers
from warden.config import ProviderDialect
from warden.ledger import InteractionInput, InteractionLedger
from warden.policies import PolicyStore, ToolInvocationEngine, TrustedDataEvaluator
from warden.providers import ToolCall
from warden.proxy.context_filter import filter_blocked
from warden.quarantine import QuarantineEvaluator

logger = logging.getLogger(__name__)

FAIL_CLOSED_REASON = "Security evaluation failed - blocking operation for safety"


@dataclass(frozen=True)
class RequestContext:
    provider: str
    conversation_id: str
    agent_id: str | None

    @property
    def dialect(self) -> ProviderDialect:
        return providers.dialect_of(self.provider)

    @property
    def interaction_type(self) -> str:
        return providers.interaction_type(self.provider)


def _tool_name_from_history(dialect: ProviderDialect, messages: list[dict[str, Any]], tool_call_id: str) -> str | None:
    for message in reversed(messages):
        for call in providers.tool_calls_of(dialect, message):
            if call.id == tool_call_id:
                return call.name
    return None


class ChatInterceptor:
    """Records, filters and reviews one intercepted chat exchange."""

    def __init__(
        self,
        ledger: InteractionLedger,
        policies: PolicyStore,
        trusted_data: TrustedDataEvaluator,
        invocation: ToolInvocationEngine,
        quarantine: QuarantineEvaluator,
    ) -> None:
        self.ledger = ledger
        self.policies = policies
        self.trusted_data = trusted_data
        self.invocation = invocation
        self.quarantine = quarantine

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def ingest(self, ctx: RequestContext, body: dict[str, Any]) -> None:
        """Record what is new in the request: tool results, then the user turn.

        The client resends the whole history each turn; tool results already
        on the ledger are skipped, and the trailing user message is recorded
        unless it is already the latest interaction.
        """
        dialect = ctx.dialect
        messages: list[dict[str, Any]] = body["messages"]

        if ctx.agent_id is not None:
            await self.policies.persist_tools(ctx.agent_id, providers.tool_definitions_of(dialect, body))

        async with self.ledger.sequenced(ctx.conversation_id):
            recorded = await self.ledger.recorded_tool_call_ids(ctx.conversation_id)
            for result in providers.tool_results_of(dialect, messages):
                if result.tool_call_id in recorded:
                    continue
                tool_name = await self.ledger.find_tool_name(ctx.conversation_id, result.tool_call_id)
                if tool_name is None:
                    tool_name = _tool_name_from_history(dialect, messages, result.tool_call_id)
                await self.trusted_data.evaluate_and_record(
                    conversation_id=ctx.conversation_id,
                    agent_id=ctx.agent_id,
                    provider=ctx.interaction_type,
                    message=providers.tool_result_message(dialect, messages[result.message_index], result.tool_call_id),
                    tool_call_id=result.tool_call_id,
                    tool_name=tool_name,
                    tool_result=result.content,
                )
                recorded.add(result.tool_call_id)

            trailing = messages[-1]
            if providers.is_user_authored(dialect, trailing):
                content = {"role": "user", "content": providers.message_text(dialect, trailing)}
                last = await self.ledger.last_interaction(ctx.conversation_id)
                if last is None or last.role != "user" or last.content != content:
                    await self.ledger.append(
                        ctx.conversation_id,
                        InteractionInput(
                            provider=ctx.interaction_type,
                            role="user",
                            content=content,
                            agent_id=ctx.agent_id,
                        ),
                    )

    async def outbound_messages(self, ctx: RequestContext, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        blocked = await self.ledger.blocked_tool_call_ids(ctx.conversation_id)
        filtered = filter_blocked(ctx.dialect, messages, blocked)
        if filtered is not messages:
            logger.info(
                "Removed %d blocked tool result(s) from conversation %s",
                len(blocked),
                ctx.conversation_id,
            )
        return filtered

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def review_tool_calls(self, ctx: RequestContext, calls: list[ToolCall]) -> str | None:
        """Refusal text for the first blocked tool call, or None to allow all.

        Calls no rule decided are escalated to the quarantine controller
        when the conversation holds tainted data.
        """
        if not calls:
            return None
        try:
            return await self._review(ctx, calls)
        except Exception:
            logger.exception("Tool call review failed for conversation %s", ctx.conversation_id)
            return providers.refusal_text(calls[0], FAIL_CLOSED_REASON)

    async def _review(self, ctx: RequestContext, calls: list[ToolCall]) -> str | None:
        untrusted = bool(await self.ledger.list_tainted(ctx.conversation_id))
        escalate: ToolCall | None = None

        for call in calls:
            tool = await self.policies.resolve_tool(ctx.agent_id, call.name)
            decision = await self.invocation.evaluate(tool.id if tool else None, call.arguments, untrusted)
            if not decision.allowed:
                logger.info(
                    "Tool call %s (%s) denied in conversation %s: %s",
                    call.id,
                    call.name,
                    ctx.conversation_id,
                    decision.reason,
                )
                return providers.refusal_text(call, decision.reason)
            if untrusted and not decision.matched and escalate is None:
                escalate = call

        if escalate is not None:
            verdict = await self.quarantine.evaluate(ctx.conversation_id)
            if not verdict.is_allowed:
                return providers.refusal_text(escalate, verdict.deny_reason)
        return None

    async def record_response(self, ctx: RequestContext, message: dict[str, Any]) -> None:
        async with self.ledger.sequenced(ctx.conversation_id):
            await self.ledger.append(
                ctx.conversation_id,
                InteractionInput(
                    provider=ctx.interaction_type,
                    role="assistant",
                    content=message,
                    agent_id=ctx.agent_id,
                ),
            )
