"""Presentation model of a rendered conversation.

A :class:`Document` is an ordered list of :class:`MessageView` objects.
Each view keeps its rendered body as parts: static markup, collapsible
annotation blocks and math slots. Keeping blocks and slots as objects lets
disclosure state and late math renders change a view without re-running
the markup pipeline.
"""

from __future__ import annotations

import html
from collections.abc import Iterator
from dataclasses import dataclass, field

from tidechat.annotations import AnnotationKind, AnnotationSegment, render_block
from tidechat.scroll import Viewport


@dataclass
class MathSlot:
    """Where one formula goes; shows its raw source until markup arrives."""

    key: str
    tex: str
    raw: str
    display: bool
    markup: str | None = None

    def to_html(self) -> str:
        key = html.escape(self.key, quote=True)
        body = self.markup if self.markup else html.escape(self.raw)
        if self.display:
            return (
                f'<div class="math-block-wrap" data-math-key="{key}" '
                f'data-tex="{html.escape(self.tex, quote=True)}">'
                f'<div class="math-render">{body}</div></div>'
            )
        return f'<span class="math-slot" data-math-key="{key}">{body}</span>'


@dataclass
class Disclosure:
    """A collapsible reasoning or tool block."""

    segment: AnnotationSegment
    open: bool = True

    @property
    def kind(self) -> AnnotationKind:
        return self.segment.kind

    def to_html(self) -> str:
        return render_block(self.segment, self.open)


Part = str | MathSlot | Disclosure


@dataclass
class MessageView:
    role: str
    parts: list[Part] = field(default_factory=list)
    raw_markdown: str = ""
    raw_answer: str = ""
    raw_reasoning: str = ""
    finalized: bool = False
    error: bool = False

    @property
    def html(self) -> str:
        return "".join(p if isinstance(p, str) else p.to_html() for p in self.parts)

    def slots(self) -> list[MathSlot]:
        return [p for p in self.parts if isinstance(p, MathSlot)]

    def disclosures(self, kind: AnnotationKind | None = None) -> list[Disclosure]:
        return [
            p for p in self.parts
            if isinstance(p, Disclosure) and (kind is None or p.kind is kind)
        ]

    def open_states(self, kind: AnnotationKind) -> list[bool]:
        """Open/closed state of each block of *kind*, by ordinal."""
        return [d.open for d in self.disclosures(kind)]

    def set_open(self, kind: AnnotationKind, ordinal: int, is_open: bool) -> None:
        """Toggle one block, as a user clicking its summary would."""
        self.disclosures(kind)[ordinal].open = is_open

    def close_disclosures(self) -> None:
        for d in self.disclosures():
            d.open = False

    def paint(self, key: str, markup: str) -> int:
        painted = 0
        for slot in self.slots():
            if slot.key == key:
                slot.markup = markup
                painted += 1
        return painted


@dataclass
class Document:
    views: list[MessageView] = field(default_factory=list)
    viewport: Viewport = field(default_factory=Viewport)

    def __iter__(self) -> Iterator[MessageView]:
        return iter(self.views)

    def __len__(self) -> int:
        return len(self.views)

    def append(self, role: str) -> MessageView:
        view = MessageView(role=role)
        self.views.append(view)
        return view

    def clear(self) -> None:
        self.views.clear()

    def paint(self, key: str, markup: str) -> int:
        """Fill every slot with *key* across all views; returns the slot count."""
        return sum(view.paint(key, markup) for view in self.views)
