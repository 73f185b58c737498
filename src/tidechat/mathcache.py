"""Math segment extraction and the process-wide render cache.

Four delimiter families are recognised: ``$$...$$`` and ``\\[...\\]``
(display), ``$...$`` and ``\\(...\\)`` (inline). Every formula gets a key
made of its display tag and a hash of its TeX, so a repeat anywhere in the
process reuses one render while the same TeX shown inline and as a block
renders twice.

The cache, the in-flight table and the set of failed keys live for the
whole process. Entries are content-addressed and written once, so they are
never evicted or reset. A formula that failed to render keeps showing its
raw source and is not retried by later render passes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING

from latex2mathml.converter import convert as latex_to_mathml

if TYPE_CHECKING:
    from tidechat.document import Document, MessageView

logger = logging.getLogger(__name__)

MathRenderer = Callable[[str, bool], Awaitable["str | None"]]

_MATH_CACHE: dict[str, str] = {}
_INFLIGHT: dict[str, asyncio.Task] = {}
_FAILED: set[str] = set()

# (open, close, display)
_DELIMITERS = (
    ("$$", "$$", True),
    ("\\[", "\\]", True),
    ("\\(", "\\)", False),
)


@dataclass
class MathSegment:
    key: str
    tex: str
    raw: str
    display: bool


def hash_djb2(s: str) -> str:
    h = 5381
    for ch in s:
        h = (((h << 5) + h) & 0xFFFFFFFF) ^ ord(ch)
    return format(h & 0xFFFFFFFF, "x")


def math_key(tex: str, display: bool) -> str:
    return f"m_{'D' if display else 'I'}_{hash_djb2(tex)}"


def _find_inline_close(text: str, start: int) -> int:
    """Index of the ``$`` closing an inline formula, or -1 at a newline."""
    dollar = text.find("$", start)
    if dollar == -1:
        return -1
    newline = text.find("\n", start, dollar)
    return dollar if newline == -1 else -1


def extract_math(text: str) -> tuple[str, list[MathSegment]]:
    """Replace complete math spans with ``§§MATH{n}§§`` placeholders.

    Single left-to-right pass; ``$$`` is tried before ``$`` at the same
    position. A closing delimiter that does not exist is remembered so
    unmatched openers never rescan the text.
    """
    text = text or ""
    out: list[str] = []
    segments: list[MathSegment] = []
    unclosed: set[str] = set()
    last = 0
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch not in "$\\":
            i += 1
            continue
        found = None
        for opener, closer, display in _DELIMITERS:
            if closer in unclosed or not text.startswith(opener, i):
                continue
            end = text.find(closer, i + len(opener))
            if end == -1:
                unclosed.add(closer)
                continue
            found = (end + len(closer), text[i + len(opener):end], display)
            break
        if found is None and ch == "$":
            end = _find_inline_close(text, i + 1)
            if end > i + 1:
                found = (end + 1, text[i + 1:end], False)
        if found is None:
            i += 1
            continue
        stop, tex, display = found
        segment = MathSegment(
            key=math_key(tex, display), tex=tex, raw=text[i:stop], display=display,
        )
        out.append(text[last:i])
        out.append(f"§§MATH{len(segments)}§§")
        segments.append(segment)
        i = last = stop
    out.append(text[last:])
    return "".join(out), segments


async def render_mathml(tex: str, display: bool) -> str | None:
    """Default renderer: TeX to MathML via latex2mathml, off the event loop."""
    return await asyncio.to_thread(
        latex_to_mathml, tex, display="block" if display else "inline",
    )


_renderer: MathRenderer = render_mathml


def set_math_renderer(renderer: MathRenderer | None) -> None:
    """Swap the function used for uncached formulas (``None`` restores MathML)."""
    global _renderer
    _renderer = renderer or render_mathml


async def _render_key(key: str, tex: str, display: bool) -> str | None:
    try:
        markup = await _renderer(tex, display)
    except Exception as e:
        logger.debug(f"Math render failed for {key}: {e}")
        markup = None
    finally:
        _INFLIGHT.pop(key, None)
    if not markup:
        _FAILED.add(key)
        return None
    return _MATH_CACHE.setdefault(key, markup)


def request_render(key: str, tex: str, display: bool) -> asyncio.Task:
    """Start rendering *key* unless a render for it is already running."""
    task = _INFLIGHT.get(key)
    if task is None:
        task = asyncio.get_running_loop().create_task(
            _render_key(key, tex, display), name=f"math-{key}",
        )
        _INFLIGHT[key] = task
    return task


async def render_math(tex: str, display: bool) -> str | None:
    """Render one formula through the cache; ``None`` when rendering failed."""
    key = math_key(tex, display)
    cached = _MATH_CACHE.get(key)
    if cached is not None:
        return cached
    return await asyncio.shield(request_render(key, tex, display))


def _paint_when_done(document: Document, key: str, task: asyncio.Task) -> None:
    if task.cancelled():
        return
    markup = task.result()
    if markup:
        document.paint(key, markup)


def fill_math_slots(view: MessageView, document: Document | None = None) -> None:
    """Paint cached formulas now and schedule renders for the rest.

    A finished render paints every slot with its key in the whole
    *document*, not just in *view*. Without a running event loop uncached
    slots keep showing their raw source.
    """
    pending = {}
    for slot in view.slots():
        markup = _MATH_CACHE.get(slot.key)
        if markup is not None:
            slot.markup = markup
        elif slot.key not in _FAILED:
            pending.setdefault(slot.key, slot)
    if not pending:
        return
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running event loop; leaving math slots unrendered")
        return
    target = document if document is not None else view
    for key, slot in pending.items():
        task = request_render(key, slot.tex, slot.display)
        task.add_done_callback(partial(_paint_when_done, target, key))
