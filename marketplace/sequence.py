"""
sequence.py - Item identifier generator

Strictly increasing, never reused. peek() lets an operation learn the id it
will receive without consuming it, so a failed listing leaves no gap.
"""

from __future__ import annotations
import threading


class ItemIdSequence:
    """Monotonic integer sequence starting at `start` (default 1)."""

    def __init__(self, start: int = 1):
        if start < 1:
            raise ValueError(f"Sequence must start at 1 or above, got {start}")
        self._start = start
        self._next = start
        self._lock = threading.Lock()

    def peek(self) -> int:
        """Return the id the next call to next() will hand out."""
        with self._lock:
            return self._next

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value

    @property
    def issued(self) -> int:
        """Count of ids handed out so far."""
        with self._lock:
            return self._next - self._start
