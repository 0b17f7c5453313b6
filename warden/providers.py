"""Provider-tagged request/response shapes and the shared extraction helpers.

Every upstream vendor speaks one of two wire dialects: OpenAI-style chat
completions (openai, xai, cerebras, vllm, ollama) or Anthropic messages.
Interactions are tagged ``{provider}:{endpoint}`` (e.g. ``xai:chatCompletions``)
and all role/tool-call/tool-result access goes through the functions below
rather than per-provider classes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from warden.config import PROVIDER_DIALECTS, ProviderDialect
from warden.errors import RequestValidationError


# Chat endpoint suffix per dialect; requests ending with it are intercepted
CHAT_SUFFIXES: dict[ProviderDialect, str] = {
    "openai": "chat/completions",
    "anthropic": "messages",
}

_ENDPOINT_TAGS: dict[ProviderDialect, str] = {
    "openai": "chatCompletions",
    "anthropic": "messages",
}


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultView:
    """A tool result carried by an inbound message."""

    tool_call_id: str
    content: Any
    message_index: int


@dataclass
class ToolDefinition:
    """A tool declared by the client in the request body."""

    name: str
    description: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Envelope validation
# ---------------------------------------------------------------------------


class OpenAIChatRequest(BaseModel):
    """Minimal chat-completions envelope; unknown fields pass through."""

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[dict[str, Any]] = Field(min_length=1)
    stream: bool = False
    tools: list[dict[str, Any]] | None = None

    @field_validator("messages")
    @classmethod
    def _check_roles(cls, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        allowed = {"system", "developer", "user", "assistant", "tool", "function"}
        for i, message in enumerate(messages):
            if message.get("role") not in allowed:
                raise ValueError(f"messages[{i}].role must be one of {sorted(allowed)}")
            if message.get("role") == "tool" and not message.get("tool_call_id"):
                raise ValueError(f"messages[{i}] is a tool message without tool_call_id")
        return messages


class AnthropicMessagesRequest(BaseModel):
    """Minimal messages envelope; unknown fields pass through."""

    model_config = ConfigDict(extra="allow")

    model: str
    max_tokens: int
    messages: list[dict[str, Any]] = Field(min_length=1)
    stream: bool = False
    tools: list[dict[str, Any]] | None = None

    @field_validator("messages")
    @classmethod
    def _check_roles(cls, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for i, message in enumerate(messages):
            if message.get("role") not in ("user", "assistant"):
                raise ValueError(f"messages[{i}].role must be 'user' or 'assistant'")
        return messages


_ENVELOPES: dict[ProviderDialect, type[BaseModel]] = {
    "openai": OpenAIChatRequest,
    "anthropic": AnthropicMessagesRequest,
}


def validate_request(dialect: ProviderDialect, body: Any) -> None:
    """Check the inbound body against the dialect envelope.

    Raises RequestValidationError with a readable message on mismatch.
    """
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object")
    try:
        _ENVELOPES[dialect].model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise RequestValidationError(f"Invalid request at '{location}': {first.get('msg')}") from e


# ---------------------------------------------------------------------------
# Tags and dialects
# ---------------------------------------------------------------------------


def dialect_of(provider: str) -> ProviderDialect:
    """Dialect for a provider name or an interaction type tag."""
    name = provider.split(":", 1)[0]
    return PROVIDER_DIALECTS[name]


def interaction_type(provider: str) -> str:
    """Type discriminator stored on each interaction, e.g. ``openai:chatCompletions``."""
    return f"{provider}:{_ENDPOINT_TAGS[dialect_of(provider)]}"


def is_chat_path(provider: str, path: str) -> bool:
    return path.rstrip("/").endswith(CHAT_SUFFIXES[dialect_of(provider)])


# ---------------------------------------------------------------------------
# Message extraction
# ---------------------------------------------------------------------------


def parse_tool_output(content: Any) -> Any:
    """Parse tool output as JSON when possible, otherwise return it as-is."""
    if isinstance(content, list):
        texts = [p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"]
        if texts and len(texts) == len(content):
            content = "\n".join(texts)
    if isinstance(content, str):
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            return content
    return content


def _text_parts(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"]
        if texts:
            return "\n".join(texts)
    return None


def message_text(dialect: ProviderDialect, message: dict[str, Any]) -> str | None:
    """Plain text authored in a message, or None when it carries no text."""
    return _text_parts(message.get("content"))


def tool_calls_of(dialect: ProviderDialect, message: dict[str, Any]) -> list[ToolCall]:
    """Tool calls requested in an assistant message."""
    if message.get("role") != "assistant":
        return []

    calls: list[ToolCall] = []
    if dialect == "anthropic":
        content = message.get("content")
        if not isinstance(content, list):
            return []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                args = block.get("input")
                calls.append(ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments=args if isinstance(args, dict) else {},
                ))
        return calls

    for tc in message.get("tool_calls") or []:
        if tc.get("type") == "custom" and tc.get("custom"):
            name = tc["custom"].get("name", "")
            raw_args = tc["custom"].get("input", "")
        else:
            function = tc.get("function") or {}
            name = function.get("name", "unknown")
            raw_args = function.get("arguments", "")
        try:
            args = json.loads(raw_args) if raw_args else {}
        except (json.JSONDecodeError, TypeError):
            args = {}
        calls.append(ToolCall(id=tc.get("id", ""), name=name, arguments=args if isinstance(args, dict) else {}))
    return calls


def tool_results_of(dialect: ProviderDialect, messages: list[dict[str, Any]]) -> list[ToolResultView]:
    """Tool results in message order, with parsed content."""
    results: list[ToolResultView] = []
    for index, message in enumerate(messages):
        if dialect == "anthropic":
            content = message.get("content")
            if message.get("role") != "user" or not isinstance(content, list):
                continue
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    results.append(ToolResultView(
                        tool_call_id=block.get("tool_use_id", ""),
                        content=parse_tool_output(block.get("content")),
                        message_index=index,
                    ))
        elif message.get("role") == "tool":
            results.append(ToolResultView(
                tool_call_id=message.get("tool_call_id", ""),
                content=parse_tool_output(message.get("content")),
                message_index=index,
            ))
    return results


def tool_result_message(dialect: ProviderDialect, message: dict[str, Any], tool_call_id: str) -> dict[str, Any]:
    """The provider-shaped message holding one tool result, for the ledger."""
    if dialect != "anthropic":
        return message
    blocks = [
        b for b in message.get("content", [])
        if isinstance(b, dict) and b.get("type") == "tool_result" and b.get("tool_use_id") == tool_call_id
    ]
    return {"role": "user", "content": blocks}


def is_user_authored(dialect: ProviderDialect, message: dict[str, Any]) -> bool:
    """True for user messages with text, as opposed to tool-result carriers."""
    if message.get("role") != "user":
        return False
    return message_text(dialect, message) is not None


def tool_definitions_of(dialect: ProviderDialect, body: dict[str, Any]) -> list[ToolDefinition]:
    definitions: list[ToolDefinition] = []
    for tool in body.get("tools") or []:
        if not isinstance(tool, dict):
            continue
        if dialect == "anthropic":
            if not tool.get("name"):
                continue
            definitions.append(ToolDefinition(
                name=tool["name"],
                description=tool.get("description"),
                parameters=tool.get("input_schema") or {},
            ))
        else:
            function = tool.get("function") or tool.get("custom") or {}
            if not function.get("name"):
                continue
            definitions.append(ToolDefinition(
                name=function["name"],
                description=function.get("description"),
                parameters=function.get("parameters") or {},
            ))
    return definitions


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


def response_message(dialect: ProviderDialect, body: dict[str, Any]) -> dict[str, Any]:
    """Assistant message from a non-streaming upstream response."""
    if dialect == "anthropic":
        return {"role": "assistant", "content": body.get("content") or []}
    choices = body.get("choices") or [{}]
    message = dict(choices[0].get("message") or {})
    message.setdefault("role", "assistant")
    return message


def refusal_text(tool_call: ToolCall, reason: str) -> str:
    """Message explaining a blocked tool call, readable by model and user."""
    return (
        f"\nI tried to invoke the {tool_call.name} tool with the following arguments: "
        f"{json.dumps(tool_call.arguments)}.\n\n"
        f"However, I was denied by a tool invocation policy:\n\n{reason}"
    )


def refusal_response(dialect: ProviderDialect, body: dict[str, Any], text: str) -> dict[str, Any]:
    """Copy of a non-streaming response with tool calls replaced by refusal text."""
    existing = message_text(dialect, response_message(dialect, body))
    content = f"{existing}\n{text}" if existing else text
    if dialect == "anthropic":
        return {**body, "content": [{"type": "text", "text": content}], "stop_reason": "end_turn"}

    choices = body.get("choices") or [{"index": 0}]
    first = {
        **choices[0],
        "message": {"role": "assistant", "content": content, "refusal": None},
        "finish_reason": "stop",
    }
    return {**body, "choices": [first, *choices[1:]]}
