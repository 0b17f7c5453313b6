"""DTOs for the dual-model quarantine controller."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

InjectionType = Literal["direct_command", "social_engineering", "context_manipulation", "unknown"]
ErrorKind = Literal["timeout", "transport", "parse"]


@dataclass(frozen=True)
class ModelOutcome:
    """Result of one model call: either text or an error kind."""

    text: str | None = None
    error: ErrorKind | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class _CamelModel(BaseModel):
    # Models are prompted for camelCase keys; snake_case is accepted too
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QuarantineAnalysisResult(_CamelModel):
    """Classification of tainted content produced by the quarantined model."""

    summary: str = ""
    has_prompt_injection: bool
    injection_type: InjectionType | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    extracted_intent: str | None = None

    @field_validator("summary", mode="before")
    @classmethod
    def _clip_summary(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)[:200]

    @field_validator("injection_type", mode="before")
    @classmethod
    def _unknown_type(cls, value: Any) -> Any:
        if value is None or value in ("direct_command", "social_engineering", "context_manipulation"):
            return value
        return "unknown"


class PrivilegedDecision(_CamelModel):
    """Decision produced by the privileged model from sanitized inputs."""

    is_allowed: bool
    deny_reason: str | None = None
    requires_user_confirmation: bool | None = None
    suggested_action: str | None = None


class TaintedItem(BaseModel):
    """Sanitized view of one tainted tool result."""

    tool_name: str | None
    taint_reason: str | None
    output_preview: str


class SecurityVerdict(BaseModel):
    """Final allow/deny returned to the router."""

    is_allowed: bool
    deny_reason: str = ""
