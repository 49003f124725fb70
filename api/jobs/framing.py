"""Line framing for downloader output streams.

The downloader redraws its progress bar with bare carriage returns, so a
plain ``readline()`` would either merge every redraw into one ever-growing
line or wait forever for a newline.  ``LineFramer`` treats both ``\\n`` and
``\\r`` as terminators and hands each redraw back as its own line.
"""
from __future__ import annotations

import asyncio
import re
from typing import AsyncIterator, List, Optional

DEFAULT_MAX_LINE_BYTES = 1024 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024

_TERMINATORS = re.compile(rb"[\r\n]")


class LineTooLongError(Exception):
    """A single line outgrew the framer's buffer cap.

    ``lines`` holds the complete lines framed before the offending one.
    """

    def __init__(self, message: str, lines: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.lines = lines or []


class LineFramer:
    """Incremental splitter turning raw byte chunks into text lines.

    Parameters
    ----------
    max_line_bytes : int
        Longest line accepted, terminated or not.  Exceeding it raises
        ``LineTooLongError``.
    encoding : str
        Text encoding; undecodable bytes are replaced, never fatal.
    """

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES, encoding: str = "utf-8") -> None:
        self.max_line_bytes = max_line_bytes
        self.encoding = encoding
        self._buffer = b""

    def feed(self, data: bytes) -> List[str]:
        """Consume *data* and return every line it completes.

        Lines are returned untrimmed; ``\\r\\n`` therefore yields an empty
        line which callers are expected to drop.

        Raises
        ------
        LineTooLongError
            If a complete or partial line is longer than ``max_line_bytes``.
            The framer is reset; the stream should be abandoned.
        """
        buf = self._buffer + data
        lines: List[str] = []
        start = 0
        for match in _TERMINATORS.finditer(buf):
            if match.start() - start > self.max_line_bytes:
                self._buffer = b""
                raise LineTooLongError(
                    f"line of {match.start() - start} bytes exceeds {self.max_line_bytes}", lines
                )
            lines.append(self._decode(buf[start:match.start()]))
            start = match.end()
        self._buffer = buf[start:]
        if len(self._buffer) > self.max_line_bytes:
            size = len(self._buffer)
            self._buffer = b""
            raise LineTooLongError(
                f"line exceeds {self.max_line_bytes} bytes without a terminator ({size} buffered)", lines
            )
        return lines

    def flush(self) -> Optional[str]:
        """Return the trailing partial line at end-of-stream, if any."""
        if not self._buffer:
            return None
        line = self._decode(self._buffer)
        self._buffer = b""
        return line

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self.encoding, errors="replace")


async def aiter_lines(
    reader: asyncio.StreamReader,
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[str]:
    """Yield framed lines from *reader* until end-of-stream.

    Raises ``LineTooLongError`` if a line outgrows *max_line_bytes*; lines
    completed before the oversized one are still yielded first.
    """
    framer = LineFramer(max_line_bytes=max_line_bytes)
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        try:
            lines = framer.feed(chunk)
        except LineTooLongError as exc:
            for line in exc.lines:
                yield line
            raise
        for line in lines:
            yield line
    tail = framer.flush()
    if tail is not None:
        yield tail
