"""SSE relay for intercepted chat streams.

Text deltas are forwarded as they arrive. Tool-call events are held back
until the message boundary so the calls can be checked first; they are
then released unchanged or replaced with a refusal. The accumulators also
assemble the final assistant message for the ledger.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from warden.config import ProviderDialect
from warden.providers import ToolCall


DONE_EVENT = "data: [DONE]\n\n"


@dataclass
class SSEEvent:
    """One server-sent event as received (``raw`` keeps its exact bytes)."""

    raw: str
    event: str | None = None
    data: str | None = None

    def json(self) -> dict[str, Any] | None:
        if not self.data or self.data == "[DONE]":
            return None
        try:
            parsed = json.loads(self.data)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None


def _build_event(lines: list[str]) -> SSEEvent:
    event_name = None
    data_lines: list[str] = []
    for line in lines:
        if line.startswith("event:"):
            event_name = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].removeprefix(" "))
    return SSEEvent(
        raw="\n".join(lines) + "\n\n",
        event=event_name,
        data="\n".join(data_lines) if data_lines else None,
    )


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    """Group raw lines into events on blank-line boundaries."""
    pending: list[str] = []
    async for line in lines:
        if line == "":
            if pending:
                yield _build_event(pending)
                pending = []
            continue
        pending.append(line)
    if pending:
        yield _build_event(pending)


def _sse(data: dict[str, Any], event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


# ---------------------------------------------------------------------------
# OpenAI-style chat completion chunks
# ---------------------------------------------------------------------------


@dataclass
class _PendingOpenAICall:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class OpenAIStreamAccumulator:
    text: str = ""
    completion_id: str = ""
    model: str = ""
    created: int = 0
    finish_reason: str | None = None
    done: bool = False
    errored: bool = False
    _calls: dict[int, _PendingOpenAICall] = field(default_factory=dict)
    _held_tool_events: list[str] = field(default_factory=list)
    _held_tail: list[str] = field(default_factory=list)
    _usage_tail: list[str] = field(default_factory=list)

    def feed(self, event: SSEEvent) -> list[str]:
        """Consume an upstream event; return what can be sent right away."""
        if event.data == "[DONE]":
            self.done = True
            return []

        chunk = event.json()
        if chunk is None:
            return [event.raw]
        if "error" in chunk:
            self.errored = True
            return [event.raw]

        self.completion_id = chunk.get("id", self.completion_id)
        self.model = chunk.get("model", self.model)
        self.created = chunk.get("created", self.created)

        choices = chunk.get("choices") or []
        if not choices:
            # Trailing usage chunk
            self._usage_tail.append(event.raw)
            return []

        choice = choices[0]
        delta = choice.get("delta") or {}
        if delta.get("content"):
            self.text += delta["content"]

        if delta.get("tool_calls"):
            for part in delta["tool_calls"]:
                pending = self._calls.setdefault(part.get("index", 0), _PendingOpenAICall())
                pending.id = part.get("id") or pending.id
                function = part.get("function") or {}
                pending.name = function.get("name") or pending.name
                pending.arguments += function.get("arguments") or ""
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
            self._held_tool_events.append(event.raw)
            return []

        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]
            self._held_tail.append(event.raw)
            return []

        return [event.raw]

    @property
    def tool_calls(self) -> list[ToolCall]:
        calls = []
        for _, pending in sorted(self._calls.items()):
            try:
                args = json.loads(pending.arguments) if pending.arguments else {}
            except json.JSONDecodeError:
                args = {}
            calls.append(ToolCall(id=pending.id, name=pending.name, arguments=args if isinstance(args, dict) else {}))
        return calls

    def finish(self, refusal: str | None = None) -> list[str]:
        """Events to send once the upstream stream has ended."""
        if refusal is None:
            out = self._held_tool_events + self._held_tail + self._usage_tail
            return out + [DONE_EVENT] if self.done else out

        base = {"id": self.completion_id, "object": "chat.completion.chunk", "created": self.created, "model": self.model}
        out = [
            _sse({**base, "choices": [{"index": 0, "delta": {"content": refusal}, "finish_reason": None}]}),
            _sse({**base, "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}),
        ]
        return out + self._usage_tail + [DONE_EVENT]

    def assembled_message(self, refusal: str | None = None) -> dict[str, Any]:
        if refusal is not None:
            return {"role": "assistant", "content": self.text + refusal}
        message: dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self._calls:
            message["tool_calls"] = [
                {"id": p.id, "type": "function", "function": {"name": p.name, "arguments": p.arguments}}
                for _, p in sorted(self._calls.items())
            ]
        return message


# ---------------------------------------------------------------------------
# Anthropic message events
# ---------------------------------------------------------------------------


@dataclass
class _PendingToolUse:
    id: str
    name: str
    partial_json: str = ""


@dataclass
class AnthropicStreamAccumulator:
    message_id: str = ""
    model: str = ""
    stop_reason: str | None = None
    done: bool = False
    errored: bool = False
    _blocks: dict[int, dict[str, Any]] = field(default_factory=dict)
    _tool_uses: dict[int, _PendingToolUse] = field(default_factory=dict)
    _output_tokens: int = 0
    _held_tool_events: list[str] = field(default_factory=list)
    _held_tail: list[str] = field(default_factory=list)

    def feed(self, event: SSEEvent) -> list[str]:
        data = event.json()
        if data is None:
            return [event.raw]

        kind = data.get("type") or event.event
        index = data.get("index", 0)

        if kind == "message_start":
            message = data.get("message") or {}
            self.message_id = message.get("id", "")
            self.model = message.get("model", "")
            return [event.raw]

        if kind == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._tool_uses[index] = _PendingToolUse(id=block.get("id", ""), name=block.get("name", ""))
                self._held_tool_events.append(event.raw)
                return []
            self._blocks[index] = {**block, "text": block.get("text", "")} if block.get("type") == "text" else dict(block)
            return [event.raw]

        if kind == "content_block_delta":
            delta = data.get("delta") or {}
            if index in self._tool_uses:
                self._tool_uses[index].partial_json += delta.get("partial_json", "")
                self._held_tool_events.append(event.raw)
                return []
            if delta.get("type") == "text_delta" and index in self._blocks:
                self._blocks[index]["text"] = self._blocks[index].get("text", "") + delta.get("text", "")
            return [event.raw]

        if kind == "content_block_stop":
            if index in self._tool_uses:
                self._held_tool_events.append(event.raw)
                return []
            return [event.raw]

        if kind == "message_delta":
            self.stop_reason = (data.get("delta") or {}).get("stop_reason")
            self._output_tokens = (data.get("usage") or {}).get("output_tokens", 0)
            self._held_tail.append(event.raw)
            return []

        if kind == "message_stop":
            self.done = True
            self._held_tail.append(event.raw)
            return []

        if kind == "error":
            self.errored = True

        return [event.raw]

    @property
    def tool_calls(self) -> list[ToolCall]:
        calls = []
        for _, pending in sorted(self._tool_uses.items()):
            try:
                args = json.loads(pending.partial_json) if pending.partial_json else {}
            except json.JSONDecodeError:
                args = {}
            calls.append(ToolCall(id=pending.id, name=pending.name, arguments=args if isinstance(args, dict) else {}))
        return calls

    def finish(self, refusal: str | None = None) -> list[str]:
        if refusal is None:
            return self._held_tool_events + self._held_tail

        # Held tool_use blocks were never sent, so the refusal follows the forwarded ones
        index = len(self._blocks)
        return [
            _sse(
                {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}},
                "content_block_start",
            ),
            _sse(
                {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": refusal}},
                "content_block_delta",
            ),
            _sse({"type": "content_block_stop", "index": index}, "content_block_stop"),
            _sse(
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": "end_turn", "stop_sequence": None},
                    "usage": {"output_tokens": self._output_tokens},
                },
                "message_delta",
            ),
            _sse({"type": "message_stop"}, "message_stop"),
        ]

    def assembled_message(self, refusal: str | None = None) -> dict[str, Any]:
        content: list[dict[str, Any]] = [b for _, b in sorted(self._blocks.items())]
        if refusal is not None:
            content.append({"type": "text", "text": refusal})
        else:
            for call, (_, pending) in zip(self.tool_calls, sorted(self._tool_uses.items())):
                content.append({"type": "tool_use", "id": pending.id, "name": pending.name, "input": call.arguments})
        return {"role": "assistant", "content": content}


StreamAccumulator = OpenAIStreamAccumulator | AnthropicStreamAccumulator


def create_accumulator(dialect: ProviderDialect) -> StreamAccumulator:
    if dialect == "anthropic":
        return AnthropicStreamAccumulator()
    return OpenAIStreamAccumulator()
