"""Shared fixtures: in-memory stores, scripted model client, real Postgres."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from warden.config import Settings
from warden.ledger import InteractionInput, InteractionLedger, InteractionRecord
from warden.policies import (
    ToolInvocationEngine,
    ToolInvocationPolicyRecord,
    ToolRecord,
    TrustedDataEvaluator,
    TrustedDataPolicyRecord,
)
from warden.providers import ToolDefinition
from warden.proxy.pipeline import ChatInterceptor
from warden.quarantine import DualModelController, QuarantineEvaluator
from warden.storage.database import Database
from warden.storage.migrator import run_migrations

# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


class InMemoryLedgerStore:
    """LedgerStore kept in a list, ordered by insertion."""

    def __init__(self) -> None:
        self.rows: list[InteractionRecord] = []
        self.fail_inserts = False

    async def insert(self, conversation_id: str, interaction: InteractionInput) -> InteractionRecord:
        if self.fail_inserts:
            raise RuntimeError("ledger unavailable")
        record = InteractionRecord(
            id=uuid4(),
            conversation_id=conversation_id,
            seq=len(self.rows) + 1,
            created_at=datetime.now(UTC),
            **interaction.model_dump(),
        )
        self.rows.append(record)
        return record

    async def list_interactions(self, conversation_id: str, tainted_only: bool = False) -> list[InteractionRecord]:
        return [
            r for r in self.rows
            if r.conversation_id == conversation_id and (r.tainted or not tainted_only)
        ]

    async def blocked_tool_call_ids(self, conversation_id: str) -> set[str]:
        return {
            r.tool_call_id for r in self.rows
            if r.conversation_id == conversation_id and r.blocked and r.tool_call_id
        }


class InMemoryPolicyStore:
    """PolicyStore with sync helpers for seeding rules."""

    def __init__(self) -> None:
        self.tools: list[ToolRecord] = []
        self.trusted: list[TrustedDataPolicyRecord] = []
        self.invocation: list[ToolInvocationPolicyRecord] = []

    def add_tool(self, name: str, agent_id: str | None = None) -> ToolRecord:
        tool = ToolRecord(id=uuid4(), agent_id=agent_id, name=name)
        self.tools.append(tool)
        return tool

    def add_trusted_data_policy(
        self,
        tool: ToolRecord,
        attribute_path: str,
        operator: str,
        value: str,
        action: str = "block_always",
        description: str | None = None,
    ) -> TrustedDataPolicyRecord:
        policy = TrustedDataPolicyRecord(
            id=uuid4(),
            tool_id=tool.id,
            attribute_path=attribute_path,
            operator=operator,
            value=value,
            action=action,
            description=description,
        )
        self.trusted.append(policy)
        return policy

    def add_tool_invocation_policy(
        self,
        tool: ToolRecord,
        argument_name: str,
        operator: str,
        value: str,
        action: str,
        reason: str | None = None,
    ) -> ToolInvocationPolicyRecord:
        policy = ToolInvocationPolicyRecord(
            id=uuid4(),
            tool_id=tool.id,
            argument_name=argument_name,
            operator=operator,
            value=value,
            action=action,
            reason=reason,
        )
        self.invocation.append(policy)
        return policy

    async def resolve_tool(self, agent_id: str | None, name: str) -> ToolRecord | None:
        scoped = [t for t in self.tools if t.name == name and agent_id is not None and t.agent_id == agent_id]
        if scoped:
            return scoped[0]
        return next((t for t in self.tools if t.name == name and t.agent_id is None), None)

    async def trusted_data_policies(self, tool_id: UUID) -> list[TrustedDataPolicyRecord]:
        return [p for p in self.trusted if p.tool_id == tool_id]

    async def tool_invocation_policies(self, tool_id: UUID) -> list[ToolInvocationPolicyRecord]:
        return [p for p in self.invocation if p.tool_id == tool_id]

    async def persist_tools(self, agent_id: str | None, tools: list[ToolDefinition]) -> int:
        known = {t.name for t in self.tools if t.agent_id == agent_id}
        added = 0
        for definition in tools:
            if definition.name not in known:
                self.add_tool(definition.name, agent_id)
                known.add(definition.name)
                added += 1
        return added


# ---------------------------------------------------------------------------
# Scripted model client
# ---------------------------------------------------------------------------

HANG = object()


class ScriptedModelClient:
    """Returns queued replies in order; exceptions in the queue are raised.

    ``HANG`` blocks until cancelled, to exercise timeouts.
    """

    HANG = HANG

    def __init__(self, *replies: object) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[str, list[dict[str, str]], float]] = []

    async def generate(self, system_prompt: str, messages: list[dict[str, str]], temperature: float) -> str:
        self.calls.append((system_prompt, messages, temperature))
        reply = self.replies.pop(0)
        if reply is HANG:
            await asyncio.Event().wait()
        if isinstance(reply, Exception):
            raise reply
        return reply


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(ledger_store) -> InteractionLedger:
    return InteractionLedger(ledger_store)


@pytest.fixture
def policy_store() -> InMemoryPolicyStore:
    return InMemoryPolicyStore()


@pytest.fixture
def model_client() -> ScriptedModelClient:
    return ScriptedModelClient()


@pytest.fixture
def controller(model_client) -> DualModelController:
    return DualModelController(model_client, temperature=0.1, timeout=0.5)


@pytest.fixture
def quarantine(ledger, controller) -> QuarantineEvaluator:
    return QuarantineEvaluator(ledger, controller)


@pytest.fixture
def interceptor(ledger, policy_store, quarantine) -> ChatInterceptor:
    return ChatInterceptor(
        ledger=ledger,
        policies=policy_store,
        trusted_data=TrustedDataEvaluator(policy_store, ledger),
        invocation=ToolInvocationEngine(policy_store),
        quarantine=quarantine,
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db():
    """Database with migrations applied; skips when Postgres is unreachable."""
    database = Database(Settings())
    try:
        await database.connect()
    except Exception as e:
        await database.disconnect()
        pytest.skip(f"Postgres not reachable: {e}")
    await run_migrations(database.engine)
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def session(db):
    """Function-scoped session with SAVEPOINT isolation.

    Tests can call session.commit() freely; everything is rolled back
    after each test via the outer transaction.
    """
    async with db.engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        nested = await conn.begin_nested()

        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(sess, transaction):
            nonlocal nested
            if transaction.nested and not transaction._parent.nested:
                nested = conn.sync_connection.begin_nested()

        yield session

        await session.close()
        await trans.rollback()
