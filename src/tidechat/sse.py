"""Server-Sent Events decoding for chat-completion streams."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class StreamDecoder:
    """Turns raw byte chunks into decoded ``data:`` event records.

    Partial lines, including UTF-8 sequences split across chunk
    boundaries, are buffered until their newline arrives. Once the
    terminal sentinel is seen the decoder is ``done`` and ignores
    everything after it.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.skipped = 0

    @property
    def remainder(self) -> str:
        """Text left over after the last complete line."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[Any]:
        """Consume one chunk and return the events it completed, in order."""
        if self.done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def close(self) -> list[Any]:
        """Flush the decoder at end of stream.

        A trailing ``data:`` line without its newline is still parsed; any
        other leftover text stays in :attr:`remainder` for the caller's
        non-streamed fallback.
        """
        if self.done:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        if self._buffer.strip().startswith(DATA_PREFIX):
            line, self._buffer = self._buffer, ""
            return self._parse_lines([line])
        return []

    def _parse_lines(self, lines: list[str]) -> list[Any]:
        events = []
        for line in lines:
            trimmed = line.strip()
            if not trimmed.startswith(DATA_PREFIX):
                continue
            data = trimmed[len(DATA_PREFIX):].strip()
            if data == DONE_SENTINEL:
                self.done = True
                self._buffer = ""
                break
            try:
                events.append(json.loads(data))
            except json.JSONDecodeError as e:
                self.skipped += 1
                logger.warning(f"Failed to parse SSE line {data!r}: {e}")
        return events
