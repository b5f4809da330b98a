"""
Event-stream framing: splits raw text into payloads on blank-line boundaries.
"""

from __future__ import annotations

from collections.abc import Iterator

EVENT_DELIMITER = "\n\n"
DATA_PREFIX = "data: "


def extract_payload(block: str) -> str:
    """
    Join the data of one event block into a single payload string.

    Lines are trimmed and blank lines dropped; a leading ``data: `` marker is
    removed and a bare ``data:`` line carries nothing. Every other line is
    appended as-is, in order.
    """
    parts: list[str] = []
    for raw_line in block.split("\n"):
        line = raw_line.strip()
        if not line or line == "data:":
            continue
        if line.startswith(DATA_PREFIX):
            parts.append(line[len(DATA_PREFIX):])
        else:
            parts.append(line)
    return "".join(parts)


class FrameDecoder:
    """Incremental decoder owned by a single StreamSession."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def buffer(self) -> str:
        """Unconsumed text waiting for its delimiter."""
        return self._buffer

    def feed(self, chunk: str) -> Iterator[str]:
        """
        Append ``chunk`` and yield the payload of every completed block.

        Scanned blocks are removed from the buffer; a trailing partial block
        is kept for the next call. Blocks without any data are not yielded.
        The chunk is buffered immediately, even if the result is never iterated.
        """
        self._buffer += chunk
        return self._drain()

    def _drain(self) -> Iterator[str]:
        while True:
            boundary = self._buffer.find(EVENT_DELIMITER)
            if boundary == -1:
                return
            block = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + len(EVENT_DELIMITER):]
            payload = extract_payload(block)
            if payload:
                yield payload

    def flush(self) -> Iterator[str]:
        """Yield the trailing partial block once the transport has closed."""
        block, self._buffer = self._buffer, ""
        payload = extract_payload(block)
        if payload:
            yield payload

    def reset(self) -> None:
        self._buffer = ""
