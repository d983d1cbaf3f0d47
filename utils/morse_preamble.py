"""Preamble detection for dedicated-source sessions."""

from __future__ import annotations

from utils.morse import PREAMBLE_PATTERN


class PreambleSynchronizer:
    """Accumulate raw symbols until the sync pattern shows up.

    The raw buffer is trimmed to a short tail once it grows past four
    pattern lengths, so leading noise of any length costs bounded memory.
    """

    def __init__(self, pattern: str = PREAMBLE_PATTERN):
        self.pattern = pattern
        self.max_buffer = len(pattern) * 4
        self.keep_tail = len(pattern) * 2
        self.buffer = ''
        self.synchronized = False

    def reset(self) -> None:
        self.buffer = ''
        self.synchronized = False

    def feed(self, symbols: str) -> str | None:
        """Add raw symbols; return whatever follows the pattern once found."""
        if self.synchronized:
            return symbols

        self.buffer += symbols
        idx = self.buffer.find(self.pattern)
        if idx >= 0:
            remainder = self.buffer[idx + len(self.pattern):]
            self.buffer = ''
            self.synchronized = True
            return remainder

        if len(self.buffer) > self.max_buffer:
            self.buffer = self.buffer[-self.keep_tail:]
        return None
