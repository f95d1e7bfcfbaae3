"""Chunk buffer that re-assembles top-level JSON objects from a pipe.

Backend CLIs write one JSON object per line, but the OS delivers
their output in arbitrary pieces: a read can end in the middle of a
string, a number, or a multi-line object, and prose or terminal
escape codes may sit between objects. ``ChunkBuffer`` scans each
character once, carrying its brace/string state across ``feed()``
calls, and hands back every complete ``{...}`` substring.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_NOISE_CEILING = 5000
DEFAULT_MAX_OBJECT_CHARS = 16 * 1024 * 1024


@dataclass(frozen=True)
class BufferOverflow:
    """Non-protocol output that was dropped to bound memory."""
    discarded_chars: int
    preview: str


class ChunkBuffer:
    """Incremental extractor of top-level JSON object substrings."""

    def __init__(
        self,
        noise_ceiling: int = DEFAULT_NOISE_CEILING,
        max_object_chars: int = DEFAULT_MAX_OBJECT_CHARS,
    ) -> None:
        self._noise_ceiling = noise_ceiling
        self._max_object_chars = max_object_chars
        self._buffer = ""
        self._overflow: BufferOverflow | None = None
        self._reset_scan()

    def _reset_scan(self) -> None:
        self._pos = 0
        self._start = -1
        self._depth = 0
        self._in_string = False
        self._escape = False
        # First line break inside the open candidate, outside any string.
        self._line_break = -1

    def feed(self, chunk: str) -> list[str]:
        """Append *chunk* and return the objects it completed."""
        if chunk:
            self._buffer += chunk

        out = self._scan()
        while not out and self._candidate_is_stale():
            self._drop_stale_candidate()
            out = self._scan()
        if not out:
            self._enforce_ceilings()
        return out

    def _scan(self) -> list[str]:
        out: list[str] = []
        consumed = 0
        buf = self._buffer
        i = self._pos
        n = len(buf)
        while i < n:
            ch = buf[i]
            if self._in_string:
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                # Quotes in prose between objects are noise.
                if self._depth > 0:
                    self._in_string = True
            elif ch == "{":
                if self._depth == 0:
                    self._start = i
                    self._line_break = -1
                self._depth += 1
            elif ch == "}" and self._depth > 0:
                self._depth -= 1
                if self._depth == 0:
                    out.append(buf[self._start:i + 1])
                    consumed = i + 1
                    self._start = -1
                    self._line_break = -1
            elif ch == "\n" and self._depth > 0 and self._line_break < 0:
                self._line_break = i
            i += 1
        self._pos = n

        if out:
            self._truncate(consumed)
        return out

    def _truncate(self, consumed: int) -> None:
        self._buffer = self._buffer[consumed:]
        self._pos -= consumed
        if self._start >= 0:
            self._start -= consumed
        if self._line_break >= 0:
            self._line_break -= consumed

    def _candidate_is_stale(self) -> bool:
        """An open candidate spanning a line break past the noise ceiling.

        Backends emit one object per line, so a ``{`` that is still open
        after a line break and a ceiling's worth of output came from
        prose, and the real objects are nested inside it.
        """
        return (
            self._start >= 0
            and self._line_break >= 0
            and len(self._buffer) > self._noise_ceiling
        )

    def _drop_stale_candidate(self) -> None:
        restart = self._buffer.find("{", self._line_break)
        if restart < 0:
            restart = len(self._buffer)
        self._record_overflow(self._buffer[:restart])
        self._buffer = self._buffer[restart:]
        self._reset_scan()

    def _enforce_ceilings(self) -> None:
        if self._start < 0:
            if len(self._buffer) > self._noise_ceiling:
                self._record_overflow(self._buffer)
                self._buffer = ""
                self._reset_scan()
            return

        # An object is open: drop only the noise in front of it.
        if self._start > self._noise_ceiling:
            self._record_overflow(self._buffer[:self._start])
            self._truncate(self._start)
        if len(self._buffer) - self._start > self._max_object_chars:
            logger.warning(
                "Unterminated object exceeded %d chars; discarding",
                self._max_object_chars,
            )
            self._record_overflow(self._buffer)
            self._buffer = ""
            self._reset_scan()

    def _record_overflow(self, dropped: str) -> None:
        self._overflow = BufferOverflow(
            discarded_chars=len(dropped),
            preview=dropped[:200],
        )
        logger.warning(
            "Discarded %d chars of non-protocol output: %r",
            len(dropped),
            dropped[:80],
        )

    def pop_overflow(self) -> BufferOverflow | None:
        """Return and clear the most recent overflow record."""
        overflow, self._overflow = self._overflow, None
        return overflow

    def remainder(self) -> str:
        """Unconsumed text (an incomplete object or trailing noise)."""
        return self._buffer

    def clear(self) -> None:
        self._buffer = ""
        self._overflow = None
        self._reset_scan()
