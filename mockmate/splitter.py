"""Split a stream of generated text into a primary and a secondary segment.

The model is asked to write the visible question first, then a literal marker
(``[STANDARD_ANSWER]``), then the reference answer. Fragments arrive in
arbitrary chunks, so the marker may straddle several of them: matching always
runs on the cumulative buffer, and any trailing text that could still turn
into the marker is held back until the next fragment disambiguates it.

An optional terminator (the end-of-interview flag) is matched the same way;
it and everything after it are never emitted.

There is no escaping: a marker occurring inside ordinary content is treated
as the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

PRIMARY = "primary"
SECONDARY = "secondary"


@dataclass(frozen=True)
class SegmentDelta:
    segment: str
    delta: str


@dataclass(frozen=True)
class SegmentBoundary:
    primary: str


SplitterEvent = Union[SegmentDelta, SegmentBoundary]


def _partial_suffix_len(buf: str, token: str) -> int:
    """Length of the longest suffix of ``buf`` that is a proper prefix of ``token``."""
    upto = min(len(buf), len(token) - 1)
    for n in range(upto, 0, -1):
        if buf.endswith(token[:n]):
            return n
    return 0


class SegmentSplitter:
    def __init__(self, marker: str, terminator: Optional[str] = None):
        if not marker:
            raise ValueError("marker must be a non-empty string")
        self.marker = marker
        self.terminator = terminator or None
        self._buf = ""
        self._boundary_at: Optional[int] = None  # index of the marker in _buf
        self._end_at: Optional[int] = None  # index of the terminator in _buf
        self._emitted = 0  # chars of _buf already emitted (primary or secondary)
        self._finished = False
        self.primary: Optional[str] = None
        self.secondary: Optional[str] = None

    @property
    def boundary_seen(self) -> bool:
        return self._boundary_at is not None

    @property
    def terminated(self) -> bool:
        return self._end_at is not None

    def feed(self, fragment: str) -> List[SplitterEvent]:
        if self._finished:
            raise RuntimeError("splitter already finished")
        if not fragment or self._end_at is not None:
            return []
        self._buf += fragment
        return self._advance(final=False)

    def finish(self) -> List[SplitterEvent]:
        """Flush held-back text and finalize both segments."""
        if self._finished:
            return []
        events = self._advance(final=True)
        self._finished = True
        stop = self._end_at if self._end_at is not None else len(self._buf)
        if self._boundary_at is None:
            # No marker ever arrived: the whole stream is the primary segment
            self.primary = self._buf[:stop]
        else:
            self.secondary = self._buf[self._boundary_at + len(self.marker):stop]
        return events

    def _find_terminator(self, start: int) -> None:
        if self.terminator and self._end_at is None:
            idx = self._buf.find(self.terminator, start)
            if idx >= 0:
                self._end_at = idx

    def _safe_end(self, final: bool, tokens: Tuple[str, ...]) -> int:
        if self._end_at is not None:
            return self._end_at
        if final:
            return len(self._buf)
        hold = max((_partial_suffix_len(self._buf, t) for t in tokens if t), default=0)
        return len(self._buf) - hold

    def _advance(self, final: bool) -> List[SplitterEvent]:
        events: List[SplitterEvent] = []
        if self._boundary_at is None:
            self._find_terminator(0)
            search_end = self._end_at if self._end_at is not None else len(self._buf)
            idx = self._buf.find(self.marker, 0, search_end)
            if idx < 0:
                tokens = (self.marker, self.terminator or "")
                end = self._safe_end(final, tokens)
                if end > self._emitted:
                    events.append(SegmentDelta(PRIMARY, self._buf[self._emitted:end]))
                    self._emitted = end
                return events
            if idx > self._emitted:
                events.append(SegmentDelta(PRIMARY, self._buf[self._emitted:idx]))
            self._boundary_at = idx
            self.primary = self._buf[:idx]
            self._emitted = idx + len(self.marker)
            # A terminator found before the marker was ruled out by search_end
            self._end_at = None
            events.append(SegmentBoundary(self.primary))
        self._find_terminator(self._boundary_at + len(self.marker))
        end = self._safe_end(final, (self.terminator or "",))
        if end > self._emitted:
            events.append(SegmentDelta(SECONDARY, self._buf[self._emitted:end]))
            self._emitted = end
        return events


def split_text(text: str, marker: str, terminator: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """Partition complete text the same way the streaming splitter does."""
    splitter = SegmentSplitter(marker, terminator)
    splitter.feed(text)
    splitter.finish()
    return splitter.primary or "", splitter.secondary
