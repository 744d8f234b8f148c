"""Newline framing for the agent's NDJSON output stream.

Reads arrive in arbitrary chunks; a record may be split across any
number of them, including in the middle of a multi-byte character.
"""
from __future__ import annotations

import codecs


class LineFramer:
    """Split a byte stream into complete, non-empty text lines.

    Owned by a single reader; not safe for concurrent ``feed`` calls.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        """Append *data* and return every line it completed."""
        self._buffer += self._decoder.decode(data)
        if "\n" not in self._buffer:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        return [line.strip() for line in complete if line.strip()]

    def flush(self) -> list[str]:
        """Return the unterminated tail, if any, and empty the buffer."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer.strip(), ""
        return [tail] if tail else []

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer
