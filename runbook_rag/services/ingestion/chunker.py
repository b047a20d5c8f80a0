"""Text chunking with overlapping windows and Markdown heading boundaries.

Two strategies, selected per call:

1. **Fixed window** (PDF text) -- greedy windows of at most ``max_size``
   characters.  At each boundary the window is cut at the last period or
   newline if that lies beyond half the window, so sentences stay whole;
   otherwise it is hard-cut at the edge.  The next window starts
   ``overlap`` characters before the previous one ended.

2. **Heading aware** (Markdown) -- line by line.  A heading line
   (``#`` to ``######`` followed by whitespace) always starts a new chunk
   with no overlap carried across, since a new section is a new topic.
   Inside a section, a chunk is flushed once adding the next line would
   exceed ``max_size``, and up to the last ``overlap`` characters are
   carried into the next chunk (fewer when the next line would not fit
   otherwise).  A single line longer than ``max_size`` is split with the
   fixed-window strategy.

Every returned chunk is stripped, non-empty and at most ``max_size``
characters, and chunks are returned in source order.
"""

from __future__ import annotations

import re

import structlog

logger = structlog.get_logger(logger_name=__name__)

_HEADING_RE = re.compile(r"^#{1,6}\s+")


class TextChunker:
    """Splits text into bounded, overlapping chunks.

    Parameters
    ----------
    max_size:
        Maximum characters per window (default 400).
    overlap:
        Characters of context repeated at the start of the next window
        (default 50).  Must be less than half of ``max_size`` so every
        window advances.
    """

    def __init__(self, max_size: int = 400, overlap: int = 50) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        if overlap < 0 or overlap * 2 >= max_size:
            raise ValueError("overlap must be non-negative and less than half of max_size")
        self._max_size = max_size
        self._overlap = overlap

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def overlap(self) -> int:
        return self._overlap

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk(self, text: str, heading_aware: bool = False) -> list[str]:
        """Split *text* into ordered, non-empty chunks.

        Parameters
        ----------
        text:
            The full text to chunk.
        heading_aware:
            Treat Markdown headings as hard section boundaries.

        Returns
        -------
        list[str]
            Chunks in source order.  Empty or whitespace input returns ``[]``.
        """
        if not text or not text.strip():
            return []

        if heading_aware:
            chunks = self._chunk_markdown(text)
        else:
            chunks = self._chunk_fixed(text)

        logger.debug(
            "chunking_complete",
            num_chunks=len(chunks),
            heading_aware=heading_aware,
            chars=len(text),
        )
        return chunks

    # ------------------------------------------------------------------
    # Fixed window
    # ------------------------------------------------------------------

    def _chunk_fixed(self, text: str) -> list[str]:
        chunks: list[str] = []
        length = len(text)
        start = 0

        while start < length:
            end = min(start + self._max_size, length)

            if end < length:
                window = text[start:end]
                breakpoint_ = max(window.rfind("."), window.rfind("\n"))
                if breakpoint_ > self._max_size * 0.5:
                    end = start + breakpoint_ + 1

            piece = text[start:end].strip()
            if piece:
                chunks.append(piece)

            if end >= length:
                break
            start = end - self._overlap

        return chunks

    # ------------------------------------------------------------------
    # Heading aware
    # ------------------------------------------------------------------

    def _chunk_markdown(self, text: str) -> list[str]:
        chunks: list[str] = []
        current: list[str] = []
        current_size = 0
        # False while ``current`` holds nothing but carried-over overlap.
        has_content = False

        def flush() -> str:
            joined = "\n".join(current)
            piece = joined.strip()
            if piece:
                chunks.append(piece)
            return joined

        for line in text.split("\n"):
            line_size = len(line) + 1

            if _HEADING_RE.match(line):
                if has_content:
                    flush()
                current = [line]
                current_size = line_size
                has_content = True
                continue

            if line_size > self._max_size:
                if has_content:
                    flush()
                pieces = self._chunk_fixed(line)
                chunks.extend(pieces)
                tail = self._tail(pieces[-1]) if pieces else ""
                current = [tail] if tail else []
                current_size = len(tail)
                has_content = False
                continue

            if has_content and current_size + line_size > self._max_size:
                tail = self._tail(flush())
                current = [tail] if tail else []
                current_size = len(tail)
                has_content = False

            if not has_content and current and current_size + line_size > self._max_size:
                # Carried overlap shrinks so the chunk stays within max_size.
                room = self._max_size - line_size
                carried = "\n".join(current)[-room:] if room > 0 else ""
                current = [carried] if carried.strip() else []
                current_size = len(carried) if current else 0

            current.append(line)
            current_size += line_size
            if line.strip():
                has_content = True

        if has_content:
            flush()

        return chunks

    def _tail(self, text: str) -> str:
        if self._overlap == 0:
            return ""
        tail = text[-self._overlap :]
        return tail if tail.strip() else ""
