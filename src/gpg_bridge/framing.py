"""Line framing for gpg output streams.

gpg writes status messages as lines beginning with ``[GNUPG:]``. They may have a
channel of their own or be mixed into standard output, in which case a status
message can appear in the middle of an otherwise continuing line of text.
:class:`LineFramer` splits raw bytes into text lines and status lines.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .types import zero_buffer

logger = logging.getLogger("gpg-bridge.framing")

STATUS_MARKER = b"[GNUPG:]"

_HEX_DIGITS = b"0123456789abcdefABCDEF"


class FramingMode(Enum):
    PLAIN = "plain"
    STATUS_MIXED = "status_mixed"
    STATUS_ONLY = "status_only"


@dataclass(frozen=True)
class StatusLine:
    keyword: str
    arguments: tuple[str, ...]


Frame = str | StatusLine


def zero_buffer_tail(data: bytearray, start: int) -> None:
    if start < len(data):
        data[start:] = bytes(len(data) - start)


def _percent_decode_inplace(data: bytearray) -> None:
    """Replace ``%XX`` escapes with the bytes they encode, shrinking ``data``."""
    read = write = 0
    length = len(data)
    while read < length:
        byte = data[read]
        if (
            byte == 0x25
            and read + 2 < length
            and data[read + 1] in _HEX_DIGITS
            and data[read + 2] in _HEX_DIGITS
        ):
            data[write] = int(data[read + 1 : read + 3].decode("ascii"), 16)
            read += 3
        else:
            data[write] = byte
            read += 1
        write += 1
    zero_buffer_tail(data, write)
    del data[write:]


def percent_decode(text: str) -> str:
    data = bytearray(text.encode("utf-8"))
    _percent_decode_inplace(data)
    return data.decode("utf-8", errors="replace")


def percent_encode(text: str) -> str:
    """Escape ``%``, whitespace and control characters as ``%XX``."""
    out = bytearray()
    for byte in text.encode("utf-8"):
        if byte == 0x25 or byte <= 0x20 or byte == 0x7F:
            out.extend(b"%%%02X" % byte)
        else:
            out.append(byte)
    return out.decode("utf-8")


def split_status(data: bytes | bytearray) -> StatusLine | None:
    """Tokenize the part of a status line after the marker.

    Tokens are split on whitespace first and each one is then percent-decoded,
    so escaped spaces survive inside an argument.
    """
    tokens: list[str] = []
    for raw in bytes(data).split():
        token = bytearray(raw)
        _percent_decode_inplace(token)
        tokens.append(token.decode("utf-8", errors="replace"))
        zero_buffer(token)
    if not tokens:
        return None
    return StatusLine(tokens[0], tuple(tokens[1:]))


class LineFramer:
    """Incrementally splits bytes into text lines and status lines.

    Lines are only examined once their terminator has been buffered, so the
    output does not depend on how the input was chunked.
    """

    def __init__(self, mode: FramingMode = FramingMode.PLAIN, capacity: int = 4096) -> None:
        self.mode = mode
        self._buffer = bytearray(max(capacity, 16))
        self._start = 0
        self._end = 0
        self._scan = 0
        self._carry = bytearray()

    @property
    def pending(self) -> int:
        return self._end - self._start

    def feed(self, data: bytes | bytearray) -> list[Frame]:
        """Buffer ``data`` and return every line it completes."""
        if not data:
            return []
        self._reserve(len(data))
        self._buffer[self._end : self._end + len(data)] = data
        self._end += len(data)

        frames: list[Frame] = []
        while True:
            newline = self._buffer.find(b"\n", self._scan, self._end)
            if newline == -1:
                self._scan = self._end
                break
            line_end = newline
            while line_end > self._start and self._buffer[line_end - 1] == 0x0D:
                line_end -= 1
            frame = self._take_line(self._start, line_end)
            if frame is not None:
                frames.append(frame)
            self._start = self._scan = newline + 1

        if self._start == self._end:
            self._start = self._end = self._scan = 0
        return frames

    def finish(self) -> list[Frame]:
        """Flush whatever is left at end of stream as a final line."""
        frames: list[Frame] = []
        if self._end > self._start:
            line_end = self._end
            while line_end > self._start and self._buffer[line_end - 1] == 0x0D:
                line_end -= 1
            frame = self._take_line(self._start, line_end)
            if frame is not None:
                frames.append(frame)
        if self._carry:
            frames.append(self._carry.decode("utf-8", errors="replace"))
            zero_buffer(self._carry)
            self._carry = bytearray()
        zero_buffer(self._buffer)
        self._start = self._end = self._scan = 0
        return frames

    def clear(self) -> None:
        """Zero and drop all buffered data."""
        zero_buffer(self._buffer)
        zero_buffer(self._carry)
        self._carry = bytearray()
        self._start = self._end = self._scan = 0

    def _reserve(self, count: int) -> None:
        if self._end + count <= len(self._buffer):
            return
        if self._start:
            remaining = self._end - self._start
            self._buffer[:remaining] = self._buffer[self._start : self._end]
            zero_buffer_tail(self._buffer, remaining)
            self._scan -= self._start
            self._start, self._end = 0, remaining
        capacity = len(self._buffer)
        while self._end + count > capacity:
            capacity *= 2
        if capacity != len(self._buffer):
            self._buffer.extend(bytes(capacity - len(self._buffer)))

    def _take_line(self, start: int, end: int) -> Frame | None:
        line = bytearray(self._buffer[start:end])
        self._buffer[start:end] = bytes(end - start)
        try:
            return self._frame_line(line)
        finally:
            zero_buffer(line)

    def _frame_line(self, line: bytearray) -> Frame | None:
        if self.mode == FramingMode.PLAIN:
            return line.decode("utf-8", errors="replace")

        marker = line.find(STATUS_MARKER)
        if self.mode == FramingMode.STATUS_ONLY:
            if marker == -1:
                logger.debug("Ignoring non-status line on status channel")
                return None
            return split_status(line[marker + len(STATUS_MARKER) :])

        if marker == -1:
            if self._carry:
                self._carry.extend(line)
                text = self._carry.decode("utf-8", errors="replace")
                zero_buffer(self._carry)
                self._carry = bytearray()
                return text
            return line.decode("utf-8", errors="replace")

        self._carry.extend(line[:marker])
        status = split_status(line[marker + len(STATUS_MARKER) :])
        if status is None:
            logger.warning("Status line without a keyword")
        return status
