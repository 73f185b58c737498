"""Events emitted while an exchange streams."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class TextChangedEvent(StreamEvent):
    """Answer or reasoning text of the current round grew.

    ``document`` is the full render-ready text: finalized annotations of
    earlier rounds followed by this round's reasoning and answer.
    """

    round_index: int = 0
    answer: str = ""
    reasoning: str = ""
    document: str = ""


@dataclass
class RunItemEvent(StreamEvent):
    """A discrete step in the round loop.

    ``name`` values: ``"tool_call"``, ``"round_complete"``,
    ``"round_limit"``.
    """

    name: str = ""
    data: dict = field(default_factory=dict)


@dataclass
class RunCompleteEvent(StreamEvent):
    """Final event; always the last event yielded."""

    result: Any = None
