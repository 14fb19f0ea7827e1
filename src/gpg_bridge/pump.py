"""Moving payload bytes through gpg without deadlocking on full pipes.

Feeding a large input while gpg is producing output blocks both sides once
the pipe buffers fill, so output is drained on a background thread while the
calling thread writes.
"""

from __future__ import annotations

import logging
import threading
from typing import BinaryIO, NamedTuple

from .process import ProcessSession, write_all
from .types import zero_buffer

logger = logging.getLogger("gpg-bridge.pump")

CHUNK_SIZE = 64 * 1024


class PumpResult(NamedTuple):
    source_drained: bool
    sink_drained: bool

    @property
    def complete(self) -> bool:
        return self.source_drained and self.sink_drained


def write_stream_to_process(
    source: BinaryIO | None, session: ProcessSession, chunk_size: int = CHUNK_SIZE
) -> bool:
    """Copy ``source`` to gpg's stdin, then close it.

    Returns False if gpg stopped accepting input before the source was
    exhausted. That is not an error in itself; the exit code decides.
    """
    stdin = session.stdin
    buffer = bytearray(chunk_size)
    drained = True
    try:
        while source is not None:
            count = source.readinto(buffer)  # type: ignore[attr-defined]
            if not count:
                break
            try:
                write_all(stdin, memoryview(buffer)[:count])
            except (BrokenPipeError, ConnectionResetError, ValueError):
                logger.debug("gpg closed its input before the source was exhausted")
                drained = False
                break
    finally:
        zero_buffer(buffer)
        try:
            stdin.close()
        except OSError as e:
            logger.debug(f"Error closing gpg input: {e}")
    return drained


def copy_stream(source: BinaryIO, sink: BinaryIO | None, chunk_size: int = CHUNK_SIZE) -> None:
    """Copy until end of stream. Data is discarded when ``sink`` is None."""
    buffer = bytearray(chunk_size)
    try:
        while True:
            count = source.readinto(buffer)  # type: ignore[attr-defined]
            if not count:
                break
            if sink is not None:
                sink.write(memoryview(buffer)[:count])
            buffer[:count] = bytes(count)
    finally:
        zero_buffer(buffer)


def pump(
    source: BinaryIO | None,
    sink: BinaryIO | None,
    session: ProcessSession,
    chunk_size: int = CHUNK_SIZE,
) -> PumpResult:
    """Write ``source`` to gpg's stdin while copying its stdout to ``sink``."""
    sink_state = {"drained": False}

    def drain() -> None:
        try:
            copy_stream(session.stdout, sink, chunk_size)
            sink_state["drained"] = True
        except (OSError, ValueError) as e:
            logger.warning(f"Copying gpg output failed: {e}")
            # Keep draining so gpg does not block on a full pipe
            try:
                copy_stream(session.stdout, None, chunk_size)
            except (OSError, ValueError):
                logger.debug("gpg output closed")

    reader = threading.Thread(target=drain, name="gpg-stdout-pump", daemon=True)
    reader.start()
    try:
        source_drained = write_stream_to_process(source, session, chunk_size)
    finally:
        reader.join()
    return PumpResult(source_drained, sink_state["drained"])
