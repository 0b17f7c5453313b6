"""PostgreSQL implementations of the ledger and policy stores.

All methods follow the session injection pattern: pass a session to join
an outer transaction, or omit it and the method opens and commits its own.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from warden.ledger.schemas import InteractionInput, InteractionRecord
from warden.policies.schemas import ToolInvocationPolicyRecord, ToolRecord, TrustedDataPolicyRecord
from warden.providers import ToolDefinition
from warden.storage.database import Database
from warden.storage.models import Interaction, Tool, ToolInvocationPolicy, TrustedDataPolicy

logger = logging.getLogger(__name__)


class SqlLedgerStore:
    """Interactions table access."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def insert(
        self,
        conversation_id: str,
        interaction: InteractionInput,
        session: AsyncSession | None = None,
    ) -> InteractionRecord:
        if session is None:
            async with self.db.session() as session:
                result = await self._insert(conversation_id, interaction, session)
                await session.commit()
                return result
        return await self._insert(conversation_id, interaction, session)

    async def _insert(
        self, conversation_id: str, interaction: InteractionInput, session: AsyncSession
    ) -> InteractionRecord:
        row = Interaction(conversation_id=conversation_id, **interaction.model_dump())
        session.add(row)
        await session.flush()
        # Pull server-generated id, seq and created_at
        await session.refresh(row)
        return InteractionRecord.model_validate(row)

    async def list_interactions(
        self,
        conversation_id: str,
        tainted_only: bool = False,
        session: AsyncSession | None = None,
    ) -> list[InteractionRecord]:
        if session is None:
            async with self.db.session() as session:
                return await self._list_interactions(conversation_id, tainted_only, session)
        return await self._list_interactions(conversation_id, tainted_only, session)

    async def _list_interactions(
        self, conversation_id: str, tainted_only: bool, session: AsyncSession
    ) -> list[InteractionRecord]:
        stmt = select(Interaction).where(Interaction.conversation_id == conversation_id)
        if tainted_only:
            stmt = stmt.where(Interaction.tainted.is_(True))
        result = await session.execute(stmt.order_by(Interaction.seq))
        return [InteractionRecord.model_validate(row) for row in result.scalars().all()]

    async def blocked_tool_call_ids(self, conversation_id: str, session: AsyncSession | None = None) -> set[str]:
        if session is None:
            async with self.db.session() as session:
                return await self._blocked_tool_call_ids(conversation_id, session)
        return await self._blocked_tool_call_ids(conversation_id, session)

    async def _blocked_tool_call_ids(self, conversation_id: str, session: AsyncSession) -> set[str]:
        result = await session.execute(
            select(Interaction.tool_call_id).where(
                Interaction.conversation_id == conversation_id,
                Interaction.blocked.is_(True),
                Interaction.tool_call_id.is_not(None),
            )
        )
        return set(result.scalars().all())


class SqlPolicyStore:
    """Tools and policy rule tables access."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def resolve_tool(
        self, agent_id: str | None, name: str, session: AsyncSession | None = None
    ) -> ToolRecord | None:
        if session is None:
            async with self.db.session() as session:
                return await self._resolve_tool(agent_id, name, session)
        return await self._resolve_tool(agent_id, name, session)

    async def _resolve_tool(self, agent_id: str | None, name: str, session: AsyncSession) -> ToolRecord | None:
        stmt = select(Tool).where(Tool.name == name)
        if agent_id is None:
            stmt = stmt.where(Tool.agent_id.is_(None))
        else:
            stmt = stmt.where((Tool.agent_id == agent_id) | Tool.agent_id.is_(None))
        # Agent-scoped tools shadow global ones
        stmt = stmt.order_by(Tool.agent_id.asc().nulls_last()).limit(1)
        tool = (await session.execute(stmt)).scalar_one_or_none()
        return ToolRecord.model_validate(tool) if tool else None

    async def create_tool(
        self,
        agent_id: str | None,
        definition: ToolDefinition,
        session: AsyncSession | None = None,
    ) -> ToolRecord:
        if session is None:
            async with self.db.session() as session:
                result = await self._create_tool(agent_id, definition, session)
                await session.commit()
                return result
        return await self._create_tool(agent_id, definition, session)

    async def _create_tool(self, agent_id: str | None, definition: ToolDefinition, session: AsyncSession) -> ToolRecord:
        tool = Tool(
            agent_id=agent_id,
            name=definition.name,
            description=definition.description,
            parameters=definition.parameters,
        )
        session.add(tool)
        await session.flush()
        await session.refresh(tool)
        return ToolRecord.model_validate(tool)

    async def persist_tools(
        self,
        agent_id: str | None,
        tools: list[ToolDefinition],
        session: AsyncSession | None = None,
    ) -> int:
        """Store tool definitions not yet known for the agent."""
        if not tools:
            return 0
        if session is None:
            async with self.db.session() as session:
                added = await self._persist_tools(agent_id, tools, session)
                await session.commit()
                return added
        return await self._persist_tools(agent_id, tools, session)

    async def _persist_tools(self, agent_id: str | None, tools: list[ToolDefinition], session: AsyncSession) -> int:
        owner = Tool.agent_id.is_(None) if agent_id is None else Tool.agent_id == agent_id
        result = await session.execute(select(Tool.name).where(owner))
        known = set(result.scalars().all())

        added = 0
        for definition in tools:
            if definition.name in known:
                continue
            known.add(definition.name)
            # ON CONFLICT DO NOTHING: a concurrent request may discover the same tool
            stmt = (
                pg_insert(Tool)
                .values(
                    agent_id=agent_id,
                    name=definition.name,
                    description=definition.description,
                    parameters=definition.parameters,
                )
                .on_conflict_do_nothing(constraint="uq_tools_agent_name")
                .returning(Tool.id)
            )
            if (await session.execute(stmt)).scalar_one_or_none() is not None:
                added += 1

        if added:
            logger.info("Discovered %d new tool(s) for agent %s", added, agent_id)
        return added

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def trusted_data_policies(
        self, tool_id: UUID, session: AsyncSession | None = None
    ) -> list[TrustedDataPolicyRecord]:
        if session is None:
            async with self.db.session() as session:
                return await self._trusted_data_policies(tool_id, session)
        return await self._trusted_data_policies(tool_id, session)

    async def _trusted_data_policies(self, tool_id: UUID, session: AsyncSession) -> list[TrustedDataPolicyRecord]:
        result = await session.execute(
            select(TrustedDataPolicy)
            .where(TrustedDataPolicy.tool_id == tool_id)
            .order_by(TrustedDataPolicy.created_at, TrustedDataPolicy.id)
        )
        return [TrustedDataPolicyRecord.model_validate(p) for p in result.scalars().all()]

    async def tool_invocation_policies(
        self, tool_id: UUID, session: AsyncSession | None = None
    ) -> list[ToolInvocationPolicyRecord]:
        if session is None:
            async with self.db.session() as session:
                return await self._tool_invocation_policies(tool_id, session)
        return await self._tool_invocation_policies(tool_id, session)

    async def _tool_invocation_policies(self, tool_id: UUID, session: AsyncSession) -> list[ToolInvocationPolicyRecord]:
        result = await session.execute(
            select(ToolInvocationPolicy)
            .where(ToolInvocationPolicy.tool_id == tool_id)
            .order_by(ToolInvocationPolicy.created_at, ToolInvocationPolicy.id)
        )
        return [ToolInvocationPolicyRecord.model_validate(p) for p in result.scalars().all()]

    async def add_trusted_data_policy(
        self,
        tool_id: UUID,
        attribute_path: str,
        operator: str,
        value: str,
        action: str = "block_always",
        description: str | None = None,
        session: AsyncSession | None = None,
    ) -> TrustedDataPolicyRecord:
        if session is None:
            async with self.db.session() as session:
                result = await self.add_trusted_data_policy(
                    tool_id, attribute_path, operator, value, action, description, session=session
                )
                await session.commit()
                return result

        policy = TrustedDataPolicy(
            tool_id=tool_id,
            attribute_path=attribute_path,
            operator=operator,
            value=value,
            action=action,
            description=description,
        )
        session.add(policy)
        await session.flush()
        await session.refresh(policy)
        return TrustedDataPolicyRecord.model_validate(policy)

    async def add_tool_invocation_policy(
        self,
        tool_id: UUID,
        argument_name: str,
        operator: str,
        value: str,
        action: str,
        reason: str | None = None,
        session: AsyncSession | None = None,
    ) -> ToolInvocationPolicyRecord:
        if session is None:
            async with self.db.session() as session:
                result = await self.add_tool_invocation_policy(
                    tool_id, argument_name, operator, value, action, reason, session=session
                )
                await session.commit()
                return result

        policy = ToolInvocationPolicy(
            tool_id=tool_id,
            argument_name=argument_name,
            operator=operator,
            value=value,
            action=action,
            reason=reason,
        )
        session.add(policy)
        await session.flush()
        await session.refresh(policy)
        return ToolInvocationPolicyRecord.model_validate(policy)
