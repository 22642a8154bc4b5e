"""Bracketed-paste demultiplexing of raw terminal input.

With bracketed paste enabled the terminal wraps pasted text in
``ESC[200~`` ... ``ESC[201~``. :class:`PasteDemultiplexer` splits the input
stream into bytes to forward as-is and complete paste payloads that the
session hands to the upload detector.
"""

from __future__ import annotations

from dataclasses import dataclass

PASTE_START = b"\x1b[200~"
PASTE_END = b"\x1b[201~"


@dataclass(frozen=True)
class Forward:
    """Bytes to send to the remote side unchanged."""

    data: bytes


@dataclass(frozen=True)
class Paste:
    """A complete bracketed paste, markers stripped."""

    text: str


Segment = Forward | Paste


class PasteDemultiplexer:
    """Inline state machine over chunks of raw input.

    Input without a paste in progress is never buffered: a chunk that has no
    start marker comes back as a single :class:`Forward` of the same bytes.
    """

    def __init__(self) -> None:
        self._in_paste = False
        self._buffer = bytearray()

    @property
    def in_paste(self) -> bool:
        return self._in_paste

    def reset(self) -> None:
        """Drop any partial paste (the connection ended)."""
        self._in_paste = False
        self._buffer.clear()

    def feed(self, data: bytes) -> list[Segment]:
        """Consume one chunk of input and return the segments it completes, in order."""
        segments: list[Segment] = []
        rest = data
        while rest:
            if not self._in_paste:
                start = rest.find(PASTE_START)
                if start == -1:
                    segments.append(Forward(rest))
                    break
                if start > 0:
                    segments.append(Forward(rest[:start]))
                self._in_paste = True
                rest = rest[start + len(PASTE_START) :]
                continue

            # Search the accumulated payload too, so an end marker split
            # across two chunks is still found.
            search_from = max(0, len(self._buffer) - len(PASTE_END) + 1)
            self._buffer.extend(rest)
            end = self._buffer.find(PASTE_END, search_from)
            if end == -1:
                break
            payload = bytes(self._buffer[:end])
            rest = bytes(self._buffer[end + len(PASTE_END) :])
            self.reset()
            segments.append(_complete(payload))
        return segments


def _complete(payload: bytes) -> Segment:
    try:
        return Paste(payload.decode("utf-8"))
    except UnicodeDecodeError:
        # Not text we can inspect: hand the paste through exactly as typed.
        return Forward(PASTE_START + payload + PASTE_END)


__all__ = ["PASTE_START", "PASTE_END", "Forward", "Paste", "Segment", "PasteDemultiplexer"]
