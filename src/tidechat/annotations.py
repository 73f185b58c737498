"""Inline reasoning and tool annotations.

Answer text may carry two tag families::

    <think id="r0" state="done">...</think>
    <tool name="calculator" id="call_1" state="live">INPUT:\\n...\\n\\nOUTPUT:\\n...</tool>

:func:`extract_annotations` swaps every complete span for an ordinal
placeholder (``§§THINK0§§``, ``§§TOOL0§§``) so the remainder can be turned
into markup on its own; the ``render_*_block`` functions then produce the
collapsible blocks that replace those placeholders.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from enum import Enum


class AnnotationKind(Enum):
    REASONING = "think"
    TOOL = "tool"


class AnnotationState(Enum):
    LIVE = "live"
    DONE = "done"


_PLACEHOLDER_NAMES = {
    AnnotationKind.REASONING: "THINK",
    AnnotationKind.TOOL: "TOOL",
}

_OPEN_TAG_RE = re.compile(r"<(think|tool)\b([^>]*)>")
_ATTR_RE = re.compile(r'([A-Za-z_][\w-]*)\s*=\s*"([^"]*)"')
_INPUT_HEAD_RE = re.compile(r"\s*INPUT:\s*\n", re.IGNORECASE)
_OUTPUT_SEP_RE = re.compile(r"\n\s*\nOUTPUT:\s*\n", re.IGNORECASE)


@dataclass
class AnnotationSegment:
    """One extracted span: kind, optional metadata and raw inner text."""

    kind: AnnotationKind
    inner: str
    ordinal: int = 0
    id: str | None = None
    state: AnnotationState | None = None
    name: str | None = None

    @property
    def placeholder(self) -> str:
        return f"§§{_PLACEHOLDER_NAMES[self.kind]}{self.ordinal}§§"


def parse_state(value: str | None) -> AnnotationState | None:
    """``done`` is done, any other explicit value is live, nothing is unspecified."""
    value = (value or "").strip().lower()
    if not value:
        return None
    if value == AnnotationState.DONE.value:
        return AnnotationState.DONE
    return AnnotationState.LIVE


def _parse_attrs(attrs: str) -> dict[str, str]:
    return {
        key.lower(): html.unescape(value)
        for key, value in _ATTR_RE.findall(attrs or "")
    }


def extract_annotations(text: str) -> tuple[str, list[AnnotationSegment]]:
    """Replace every complete annotation span with its placeholder.

    Spans are matched left to right and never nest: a span runs from its
    opening tag to the first closing tag of the same family. An opening
    tag without a closing tag is left in place as literal text.
    """
    text = text or ""
    out: list[str] = []
    segments: list[AnnotationSegment] = []
    counts = {kind: 0 for kind in AnnotationKind}
    unclosed: set[str] = set()
    pos = 0
    while True:
        m = _OPEN_TAG_RE.search(text, pos)
        if m is None:
            break
        tag = m.group(1)
        close = f"</{tag}>"
        end = -1 if tag in unclosed else text.find(close, m.end())
        if end == -1:
            unclosed.add(tag)
            out.append(text[pos:m.end()])
            pos = m.end()
            continue
        kind = AnnotationKind(tag)
        attrs = _parse_attrs(m.group(2))
        segment = AnnotationSegment(
            kind=kind,
            inner=text[m.end():end],
            ordinal=counts[kind],
            id=attrs.get("id") or None,
            state=parse_state(attrs.get("state")),
            name=(attrs.get("name") or "tool") if kind is AnnotationKind.TOOL else None,
        )
        counts[kind] += 1
        segments.append(segment)
        out.append(text[pos:m.start()])
        out.append(segment.placeholder)
        pos = end + len(close)
    out.append(text[pos:])
    return "".join(out), segments


def resolve_open(state: AnnotationState | None, previous: bool | None) -> bool:
    """Decide whether a disclosure block starts open.

    An explicit state wins; otherwise the block keeps whatever the previous
    render pass showed at the same position, so manual toggles survive live
    re-renders.
    """
    if state is AnnotationState.DONE:
        return False
    if state is AnnotationState.LIVE:
        return True
    return True if previous is None else previous


def split_tool_io(inner: str) -> tuple[str, str]:
    """Split tool text into its INPUT and OUTPUT sections.

    Text that does not follow the ``INPUT:`` / blank line / ``OUTPUT:``
    layout is treated as output only.
    """
    raw = (inner or "").strip()
    head = _INPUT_HEAD_RE.match(raw)
    if head:
        body = raw[head.end():]
        sep = _OUTPUT_SEP_RE.search(body)
        if sep:
            return body[:sep.start()].strip(), body[sep.end():].strip()
    return "", raw


def _esc(value: str) -> str:
    return html.escape(value or "", quote=True)


def _block_attrs(segment: AnnotationSegment, is_open: bool, state: str | None) -> str:
    attrs = " open" if is_open else ""
    if segment.id:
        attrs += f' data-block-id="{_esc(segment.id)}"'
    if state:
        attrs += f' data-state="{_esc(state)}"'
    return attrs


def render_reasoning_block(segment: AnnotationSegment, is_open: bool) -> str:
    """Reasoning renders verbatim (escaped, never interpreted) under a disclosure."""
    state = segment.state.value if segment.state else None
    return (
        f'<details class="think-block"{_block_attrs(segment, is_open, state)}>'
        "<summary>Reasoning</summary>"
        f'<div class="think-content"><code>{_esc(segment.inner.strip())}</code></div>'
        "</details>"
    )


def _tool_pane(pane: str, title: str, text: str) -> str:
    return (
        f'<div class="tool-pane" data-pane="{pane}">'
        '<div class="tool-pane-head">'
        f'<span class="tool-pane-title">{title}</span>'
        f'<button type="button" class="tool-pane-copy" data-copy="{_esc(text)}">Copy</button>'
        "</div>"
        f'<pre class="tool-pane-body"><code>{_esc(text)}</code></pre>'
        "</div>"
    )


def render_tool_block(segment: AnnotationSegment, is_open: bool) -> str:
    input_text, output_text = split_tool_io(segment.inner)
    state = segment.state.value if segment.state else AnnotationState.LIVE.value
    return (
        f'<details class="tool-block"{_block_attrs(segment, is_open, state)}>'
        f"<summary>Tool: {_esc(segment.name or 'tool')}</summary>"
        '<div class="tool-content"><div class="tool-io">'
        + _tool_pane("input", "Input", input_text)
        + _tool_pane("output", "Output", output_text)
        + "</div></div></details>"
    )


def render_block(segment: AnnotationSegment, is_open: bool) -> str:
    if segment.kind is AnnotationKind.REASONING:
        return render_reasoning_block(segment, is_open)
    return render_tool_block(segment, is_open)


def _tag_attrs(**attrs: str | None) -> str:
    return "".join(
        f' {key}="{_esc(value)}"' for key, value in attrs.items() if value
    )


def reasoning_annotation(
    text: str,
    state: AnnotationState | None = None,
    block_id: str | None = None,
) -> str:
    """Wrap reasoning text in a ``<think>`` span."""
    attrs = _tag_attrs(id=block_id, state=state.value if state else None)
    return f"<think{attrs}>{text}</think>"


def tool_annotation(
    name: str,
    input_text: str,
    output_text: str,
    state: AnnotationState | None = None,
    block_id: str | None = None,
) -> str:
    """Wrap one tool invocation in a ``<tool>`` span using the INPUT/OUTPUT layout."""
    attrs = _tag_attrs(
        name=name, id=block_id, state=state.value if state else None,
    )
    return f"<tool{attrs}>INPUT:\n{input_text}\n\nOUTPUT:\n{output_text}</tool>"
