"""Streaming primitives for chat-completion rounds.

The :class:`DeltaAccumulator` folds decoded stream events into three
independent channels: answer text, reasoning text and a partial tool-call
table.  The :class:`ToolCallAccumulator` reassembles tool calls whose
identifier, name and arguments arrive in fragments across many events.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

PARSE_ERROR_ANSWER = "**Error:** Could not parse model response."


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None
    type: str | None = None

    @classmethod
    def from_delta(cls, raw: dict) -> ToolCallFragment:
        """Build a fragment from one entry of a ``delta.tool_calls`` array.

        Fields of the wrong type are ignored rather than trusted.
        """
        function = raw.get("function")
        if not isinstance(function, dict):
            function = {}
        arguments = function.get("arguments")
        try:
            index = int(raw.get("index") or 0)
        except (TypeError, ValueError):
            index = 0
        return cls(
            index=index,
            call_id=_text_or_none(raw.get("id")),
            name=_text_or_none(function.get("name")),
            arguments_delta=arguments if isinstance(arguments, str) else None,
            type=_text_or_none(raw.get("type")),
        )


def _text_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass
class ToolCall:
    """A resolved tool call ready for the transcript."""

    id: str = ""
    name: str = ""
    arguments: str = ""
    index: int = 0
    type: str = "function"

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "function": {
                "name": self.name,
                "arguments": self.arguments,
            },
        }


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    Identifier and name are set on their first non-empty value and
    never overwritten; argument text is only ever appended.
    """

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = ToolCall(index=fragment.index)
        tc = self._pending[fragment.index]
        if fragment.call_id and not tc.id:
            tc.id = fragment.call_id
        if fragment.name and not tc.name:
            tc.name = fragment.name
        if fragment.type:
            tc.type = fragment.type
        if fragment.arguments_delta is not None:
            tc.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolCall]:
        """Return completed tool calls in index order.

        Entries still missing an id or a name are dropped; that happens
        whenever a stream ends before a call was fully announced.
        """
        calls = []
        for i in sorted(self._pending):
            tc = self._pending[i]
            if not tc.id or not tc.name:
                logger.debug(f"Dropping incomplete tool call at index {i}")
                continue
            calls.append(tc)
        return calls


class Usage(BaseModel):
    """Token usage summary reported by the endpoint."""

    model_config = ConfigDict(extra="allow")

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int


def parse_usage(payload: Any) -> Usage | None:
    """Return the usage summary of an event, if it carries a usable one."""
    if not isinstance(payload, dict):
        return None
    raw = payload.get("usage")
    if not isinstance(raw, dict):
        return None
    total = raw.get("total_tokens")
    if isinstance(total, bool) or not isinstance(total, (int, float)):
        return None
    try:
        return Usage.model_validate({**raw, "total_tokens": int(total)})
    except ValidationError as e:
        logger.warning(f"Ignoring malformed usage record: {e}")
        return None


@dataclass
class StreamDelta:
    """What a single event contributed to the round."""

    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    usage: Usage | None = None

    @property
    def changed_text(self) -> bool:
        return bool(self.content or self.reasoning)


def _first_choice(payload: Any) -> dict:
    if not isinstance(payload, dict):
        return {}
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return {}
    choice = choices[0]
    return choice if isinstance(choice, dict) else {}


def _reasoning_of(part: dict) -> str:
    value = part.get("reasoning_content")
    if value is None:
        value = part.get("reasoning")
    return value if isinstance(value, str) else ""


def parse_event(payload: Any) -> StreamDelta:
    """Extract content, reasoning, tool-call fragments and usage from one event."""
    delta = _first_choice(payload).get("delta")
    if not isinstance(delta, dict):
        delta = {}
    content = delta.get("content")
    raw_calls = delta.get("tool_calls")
    fragments = []
    if isinstance(raw_calls, list):
        fragments = [
            ToolCallFragment.from_delta(tc) for tc in raw_calls
            if isinstance(tc, dict)
        ]
    return StreamDelta(
        content=content if isinstance(content, str) else "",
        reasoning=_reasoning_of(delta),
        tool_calls=fragments,
        usage=parse_usage(payload),
    )


class DeltaAccumulator:
    """Running state of one round: answer, reasoning, tool calls and usage."""

    def __init__(self) -> None:
        self.answer = ""
        self.reasoning = ""
        self.usage: Usage | None = None
        self.tool_calls = ToolCallAccumulator()
        self.answer_started = False

    def apply(self, payload: Any) -> StreamDelta:
        """Merge one decoded event record and report what it changed."""
        delta = parse_event(payload)
        if delta.usage is not None:
            self.usage = delta.usage
        for fragment in delta.tool_calls:
            self.tool_calls.feed(fragment)
        if delta.reasoning:
            self.reasoning += delta.reasoning
        if delta.content:
            self.answer += delta.content
            self.answer_started = True
        return delta

    def apply_fallback(self, body: str) -> None:
        """Treat a trailing non-stream body as one complete response object.

        A body that is not valid JSON becomes an in-band error answer so the
        exchange still completes.
        """
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Could not parse non-streamed response body")
            self.answer = PARSE_ERROR_ANSWER
            self.answer_started = True
            return

        message = _first_choice(payload).get("message")
        if not isinstance(message, dict):
            message = {}
        content = message.get("content")
        self.answer = content if isinstance(content, str) else ""
        self.reasoning = _reasoning_of(message)
        self.answer_started = bool(self.answer)

        raw_calls = message.get("tool_calls")
        if isinstance(raw_calls, list):
            for i, raw in enumerate(raw_calls):
                if isinstance(raw, dict):
                    fragment = ToolCallFragment.from_delta(raw)
                    fragment.index = i
                    self.tool_calls.feed(fragment)

        usage = parse_usage(payload)
        if usage is not None:
            self.usage = usage

    def finalize_tool_calls(self) -> list[ToolCall]:
        return self.tool_calls.finalize()
