"""Render accumulated message text into a :class:`~tidechat.document.MessageView`.

One pass runs in this order:

1. annotation spans are swapped for ``§§THINK{n}§§`` / ``§§TOOL{n}§§``;
2. math spans are swapped for ``§§MATH{n}§§``;
3. the remainder goes through markdown-it (raw HTML disabled);
4. placeholders become disclosure blocks and math slots.

Block placeholders that markdown wrapped in a paragraph of their own are
unwrapped first so the blocks do not end up inside ``<p>``.
"""

from __future__ import annotations

import re

from markdown_it import MarkdownIt

from tidechat.annotations import (
    AnnotationKind,
    AnnotationSegment,
    extract_annotations,
    resolve_open,
)
from tidechat.document import Disclosure, Document, MathSlot, MessageView, Part
from tidechat.mathcache import MathSegment, extract_math, fill_math_slots

_md = (
    MarkdownIt("commonmark", {"breaks": True, "html": False})
    .enable("table")
    .enable("strikethrough")
)

_PLACEHOLDER_RE = re.compile(r"§§(THINK|TOOL|MATH)(\d+)§§")
_WRAPPED_RE = re.compile(r"<p>\s*(§§(THINK|TOOL|MATH)(\d+)§§)\s*</p>\n?")

_KINDS = {
    "THINK": AnnotationKind.REASONING,
    "TOOL": AnnotationKind.TOOL,
}


def to_html(text: str) -> str:
    """Plain markdown to HTML, no annotation or math handling."""
    return _md.render(text or "")


class _Slots:
    """Placeholder lookup for one render pass."""

    def __init__(
        self,
        annotations: list[AnnotationSegment],
        math: list[MathSegment],
        previous: dict[AnnotationKind, list[bool]],
    ):
        self.by_kind = {kind: [] for kind in AnnotationKind}
        for seg in annotations:
            self.by_kind[seg.kind].append(seg)
        self.math = math
        self.previous = previous

    def is_block(self, family: str, n: int) -> bool:
        if family == "MATH":
            return n < len(self.math) and self.math[n].display
        return n < len(self.by_kind[_KINDS[family]])

    def part(self, family: str, n: int) -> Part | None:
        if family == "MATH":
            if n >= len(self.math):
                return None
            seg = self.math[n]
            return MathSlot(key=seg.key, tex=seg.tex, raw=seg.raw, display=seg.display)
        segments = self.by_kind[_KINDS[family]]
        if n >= len(segments):
            return None
        seg = segments[n]
        previous = self.previous[seg.kind]
        prior = previous[n] if n < len(previous) else None
        return Disclosure(segment=seg, open=resolve_open(seg.state, prior))


def _unwrap_blocks(markup: str, slots: _Slots) -> str:
    def unwrap(m: re.Match) -> str:
        if slots.is_block(m.group(2), int(m.group(3))):
            return m.group(1)
        return m.group(0)

    return _WRAPPED_RE.sub(unwrap, markup)


def _split_parts(markup: str, slots: _Slots) -> list[Part]:
    parts: list[Part] = []
    pos = 0
    for m in _PLACEHOLDER_RE.finditer(markup):
        part = slots.part(m.group(1), int(m.group(2)))
        if part is None:
            continue
        if m.start() > pos:
            parts.append(markup[pos:m.start()])
        parts.append(part)
        pos = m.end()
    if pos < len(markup):
        parts.append(markup[pos:])
    return parts


def render_markdown_into(
    view: MessageView,
    text: str,
    document: Document | None = None,
) -> MessageView:
    """Replace the body of *view* with a fresh render of *text*.

    Blocks without an explicit state keep the open/closed choice the view
    showed at the same position before this pass. Finished math renders
    are painted across the whole *document* when one is given.
    """
    previous = {kind: view.open_states(kind) for kind in AnnotationKind}
    stripped, annotations = extract_annotations(text or "")
    stripped, math = extract_math(stripped)
    slots = _Slots(annotations, math, previous)

    markup = _unwrap_blocks(_md.render(stripped), slots)
    view.parts = _split_parts(markup, slots)
    view.raw_markdown = text or ""
    fill_math_slots(view, document)
    return view
