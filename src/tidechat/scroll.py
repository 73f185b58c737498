from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")

DEFAULT_THRESHOLD = 180


@dataclass
class Viewport:
    """Scroll position of the container showing the conversation.

    The presentation layer keeps ``scroll_height`` and ``client_height``
    current; tidechat only reads them and moves ``scroll_top``.
    """

    scroll_top: float = 0
    scroll_height: float = 0
    client_height: float = 0

    @property
    def distance_from_bottom(self) -> float:
        return self.scroll_height - (self.scroll_top + self.client_height)

    def scroll_to_bottom(self) -> None:
        self.scroll_top = max(0, self.scroll_height - self.client_height)


def is_sticky(viewport: Viewport | None, threshold: float = DEFAULT_THRESHOLD) -> bool:
    """True when the viewport sits close enough to the bottom to follow new content."""
    if viewport is None:
        return False
    return viewport.distance_from_bottom <= threshold


def with_sticky_scroll(
    viewport: Viewport | None,
    fn: Callable[[], T],
    threshold: float = DEFAULT_THRESHOLD,
) -> T:
    """Run *fn* and follow the bottom afterwards if the viewport was already there."""
    stick = is_sticky(viewport, threshold)
    out = fn()
    if stick:
        viewport.scroll_to_bottom()
    return out
