import asyncio
import logging
from collections.abc import Callable
from typing import Any

from tidechat.scroll import DEFAULT_THRESHOLD, Viewport, is_sticky

logger = logging.getLogger(__name__)

DEFAULT_DELAY = 0.06

RenderFn = Callable[[Any, str], Any]


class RenderScheduler:
    """Coalesces redraw requests into at most one render per delay window.

    The first request of a burst arms a single timer; requests arriving
    while it waits only replace the pending target and text. When the
    timer fires the newest text is rendered once, then the viewport is
    moved to the bottom if it was within ``threshold`` of the bottom just
    before that render.

    Args:
        render: ``render(target, text)`` performing one full re-render.
        viewport: Container to keep pinned to the bottom, if any.
        delay: Seconds between the first request of a burst and the render.
        threshold: Sticky-follow distance from the bottom.
    """

    def __init__(
        self,
        render: RenderFn,
        viewport: Viewport | None = None,
        delay: float = DEFAULT_DELAY,
        threshold: float = DEFAULT_THRESHOLD,
    ):
        self.render = render
        self.viewport = viewport
        self.delay = delay
        self.threshold = threshold
        self.render_count = 0
        self._handle: asyncio.TimerHandle | None = None
        self._target: Any = None
        self._text: str | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def request(self, target: Any, text: str) -> None:
        self._target = target
        self._text = text
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.delay, self._fire)

    def flush(self) -> None:
        """Render a pending request right away."""
        if self._handle is None:
            return
        self._handle.cancel()
        self._fire()

    def cancel(self) -> None:
        """Drop a pending request without rendering it."""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._target = None
        self._text = None

    def _fire(self) -> None:
        self._handle = None
        target, text = self._target, self._text
        self._target = None
        self._text = None
        if text is None:
            return
        stick = is_sticky(self.viewport, self.threshold)
        self.render(target, text)
        self.render_count += 1
        if stick:
            self.viewport.scroll_to_bottom()
