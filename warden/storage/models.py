"""SQLAlchemy ORM models for the 4 Warden tables in the warden schema."""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Single declarative base for the warden schema."""

    pass


_OPERATORS_SQL = (
    "'equal', 'not_equal', 'contains', 'not_contains', 'starts_with', "
    "'ends_with', 'matches_regex', 'greater_than', 'less_than'"
)


class Interaction(Base):
    __tablename__ = "interactions"
    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant', 'tool')", name="ck_interactions_role"),
        Index("ix_interactions_conversation_seq", "conversation_id", "seq"),
        {"schema": "warden"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    # Monotonic insertion counter; ordering key within a conversation
    seq: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False, unique=True)
    conversation_id: Mapped[str] = mapped_column(String(200), nullable=False)
    agent_id: Mapped[str | None] = mapped_column(String(100))
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[dict] = mapped_column(JSONB, nullable=False)
    tool_call_id: Mapped[str | None] = mapped_column(String(200))
    tool_name: Mapped[str | None] = mapped_column(String(200))
    tainted: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    taint_reason: Mapped[str | None] = mapped_column(Text)
    trusted: Mapped[bool | None] = mapped_column(Boolean)
    blocked: Mapped[bool | None] = mapped_column(Boolean)
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Tool(Base):
    __tablename__ = "tools"
    __table_args__ = (
        UniqueConstraint("agent_id", "name", name="uq_tools_agent_name"),
        {"schema": "warden"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    agent_id: Mapped[str | None] = mapped_column(String(100))
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    parameters: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ToolInvocationPolicy(Base):
    __tablename__ = "tool_invocation_policies"
    __table_args__ = (
        CheckConstraint(f"operator IN ({_OPERATORS_SQL})", name="ck_tool_invocation_policies_operator"),
        CheckConstraint(
            "action IN ('allow', 'deny', 'allow_when_context_is_untrusted', "
            "'deny_when_context_is_untrusted', 'require_confirmation')",
            name="ck_tool_invocation_policies_action",
        ),
        {"schema": "warden"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    tool_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("warden.tools.id", ondelete="CASCADE"), nullable=False
    )
    argument_name: Mapped[str] = mapped_column(String(200), nullable=False)
    operator: Mapped[str] = mapped_column(String(30), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.clock_timestamp())


class TrustedDataPolicy(Base):
    __tablename__ = "trusted_data_policies"
    __table_args__ = (
        CheckConstraint(f"operator IN ({_OPERATORS_SQL})", name="ck_trusted_data_policies_operator"),
        CheckConstraint(
            "action IN ('block_always', 'mark_as_untrusted', 'mark_as_trusted')",
            name="ck_trusted_data_policies_action",
        ),
        {"schema": "warden"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    tool_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("warden.tools.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text)
    attribute_path: Mapped[str] = mapped_column(Text, nullable=False)
    operator: Mapped[str] = mapped_column(String(30), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False, server_default="block_always")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.clock_timestamp())
