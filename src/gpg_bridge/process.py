"""A running gpg child process and its streams.

Non-interactive operations get a dedicated socket for status messages and
commands (``--status-fd N --command-fd N``), drained by a background thread.
Interactive operations (key editing, keyserver search) mix status lines into
standard output and read them synchronously through :meth:`ProcessSession.read_line`.
"""

from __future__ import annotations

import logging
import socket
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import IO, Any

from .config import GPGConfig
from .errors import ExecutableError
from .framing import Frame, FramingMode, LineFramer, StatusLine
from .status import StatusEvent, decode_status
from .types import SecureString, zero_buffer

logger = logging.getLogger("gpg-bridge.process")

READ_CHUNK_SIZE = 4096
EXIT_GRACE_SECONDS = 0.5
READER_DRAIN_SECONDS = 5.0


class StreamHandling(Enum):
    UNPROCESSED = "unprocessed"  # The caller reads or writes the stream itself
    CLOSE = "close"
    PROCESS_TEXT = "process_text"  # Background reader delivers lines
    DUMP_BINARY = "dump_binary"  # Background reader discards everything
    STATUS_MIXED = "status_mixed"  # Status lines mixed into stdout, read via read_line()


def is_successful_exit(exit_code: int | None) -> bool:
    """gpg exits with 0 on success and 1 on success with warnings."""
    return exit_code in (0, 1)


StatusHandler = Callable[[StatusEvent], None]
LineHandler = Callable[[str], None]


class ProcessSession:
    """Owns one gpg process, its pipes and its reader threads."""

    def __init__(
        self,
        config: GPGConfig,
        args: list[str],
        *,
        status_channel: bool = True,
        interactive: bool = False,
        close_stdin: bool = False,
        stdout: StreamHandling = StreamHandling.UNPROCESSED,
        stderr: StreamHandling = StreamHandling.PROCESS_TEXT,
        on_status: StatusHandler | None = None,
        on_prompt: StatusHandler | None = None,
        on_stdout_line: LineHandler | None = None,
        on_stderr_line: LineHandler | None = None,
    ) -> None:
        if interactive:
            stdout = StreamHandling.STATUS_MIXED
            status_channel = False
        self._config = config
        self._args = list(args)
        self._interactive = interactive
        self._status_channel = status_channel
        self._close_stdin = close_stdin
        self._stdout_handling = stdout
        self._stderr_handling = stderr

        self.on_status = on_status
        self.on_prompt = on_prompt
        self.on_stdout_line = on_stdout_line
        self.on_stderr_line = on_stderr_line

        self._process: subprocess.Popen[bytes] | None = None
        self._channel: socket.socket | None = None
        self._readers: list[threading.Thread] = []
        self._buffers: list[bytearray] = []
        self._framers: list[LineFramer] = []
        self._pending: deque[Frame] = deque()
        self._stdout_framer: LineFramer | None = None
        self._stdout_buffer: bytearray | None = None
        self._handler_error: BaseException | None = None
        self._write_lock = threading.Lock()
        self._disposed = False

    # Lifecycle

    @property
    def process(self) -> subprocess.Popen[bytes]:
        if self._process is None:
            raise RuntimeError("The process has not been started yet")
        return self._process

    @property
    def stdin(self) -> IO[bytes]:
        if self.process.stdin is None:
            raise RuntimeError("Standard input is not available")
        return self.process.stdin

    @property
    def stdout(self) -> IO[bytes]:
        if self.process.stdout is None:
            raise RuntimeError("Standard output is not available")
        return self.process.stdout

    def build_command(self, child_fd: int | None = None) -> list[str]:
        if self._config.executable is None:
            raise ExecutableError("gpg executable not found")
        command = [str(self._config.executable), *self._config.base_args()]
        if self._interactive:
            command += ["--status-fd", "1", "--command-fd", "0", "--with-colons", "--fixed-list-mode"]
        elif child_fd is not None:
            command += [
                "--exit-on-status-write-error",
                "--status-fd",
                str(child_fd),
                "--command-fd",
                str(child_fd),
            ]
        return command + self._args

    def start(self) -> None:
        if self._process is not None:
            raise RuntimeError("The process has already been started")

        child_end: socket.socket | None = None
        pass_fds: tuple[int, ...] = ()
        if self._status_channel:
            self._channel, child_end = socket.socketpair()
            pass_fds = (child_end.fileno(),)

        command = self.build_command(pass_fds[0] if pass_fds else None)
        logger.debug(f"Starting {' '.join(command)}")
        try:
            self._process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL
                if self._stdout_handling == StreamHandling.CLOSE
                else subprocess.PIPE,
                stderr=subprocess.DEVNULL
                if self._stderr_handling == StreamHandling.CLOSE
                else subprocess.PIPE,
                env=self._config.build_env(),
                pass_fds=pass_fds,
                bufsize=0,
            )
        except OSError as e:
            self._close_channel()
            raise ExecutableError(f"Could not start gpg: {e}", cause=e) from e
        finally:
            # The child has its own copy; ours would keep the channel from reaching EOF
            if child_end is not None:
                child_end.close()

        if self._close_stdin:
            self.stdin.close()

        if self._channel is not None:
            framer = LineFramer(FramingMode.STATUS_ONLY)
            self._spawn_reader("status", self._read_status, framer)

        if self._stdout_handling == StreamHandling.STATUS_MIXED:
            self._stdout_framer = LineFramer(FramingMode.STATUS_MIXED)
            self._stdout_buffer = bytearray(READ_CHUNK_SIZE)
            self._framers.append(self._stdout_framer)
            self._buffers.append(self._stdout_buffer)
        elif self._stdout_handling in (StreamHandling.PROCESS_TEXT, StreamHandling.DUMP_BINARY):
            self._spawn_pipe_reader("stdout", self.stdout, self._stdout_handling, self.on_stdout_line)

        if self._stderr_handling in (StreamHandling.PROCESS_TEXT, StreamHandling.DUMP_BINARY):
            stderr = self.process.stderr
            assert stderr is not None
            self._spawn_pipe_reader("stderr", stderr, self._stderr_handling, self.on_stderr_line)

    def kill(self) -> None:
        """Kill the process. Killing one that has already exited is not an error."""
        if self._process is None or self._process.poll() is not None:
            return
        logger.debug(f"Killing gpg process {self._process.pid}")
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    def wait_for_exit(self) -> int:
        """Wait until the process has exited and every reader has reached end of stream."""
        exit_code = self.process.wait()
        deadline = time.monotonic() + READER_DRAIN_SECONDS
        while any(reader.is_alive() for reader in self._readers):
            if self._channel is not None and time.monotonic() > deadline:
                # A helper process inherited the channel; stop waiting for its EOF
                logger.warning("Status channel still open after gpg exited")
                self._shutdown_channel()
                deadline = float("inf")
            for reader in self._readers:
                reader.join(timeout=0.05)
        logger.debug(f"gpg exited with code {exit_code}")
        return exit_code

    @property
    def exit_code(self) -> int | None:
        return None if self._process is None else self._process.returncode

    @property
    def successful_exit(self) -> bool:
        return is_successful_exit(self.exit_code)

    @property
    def handler_error(self) -> BaseException | None:
        """The first exception raised by a handler on a reader thread."""
        return self._handler_error

    def raise_handler_error(self) -> None:
        if self._handler_error is not None:
            raise self._handler_error

    def dispose(self) -> None:
        """Close the command channel, let gpg exit, then kill it if it lingers."""
        if self._disposed:
            return
        self._disposed = True

        # Closing the command channel first lets gpg exit gracefully
        self._close_channel()
        if self._process is not None:
            for stream in (self._process.stdin, self._process.stdout, self._process.stderr):
                if stream is not None:
                    try:
                        stream.close()
                    except OSError as e:
                        logger.debug(f"Error closing gpg stream: {e}")
            try:
                self._process.wait(timeout=EXIT_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                self.kill()
                self._process.wait()

        for reader in self._readers:
            reader.join(timeout=EXIT_GRACE_SECONDS)

        for framer in self._framers:
            framer.clear()
        for buffer in self._buffers:
            zero_buffer(buffer)
        self._pending.clear()

    def __enter__(self) -> ProcessSession:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()

    # Command channel

    def send_line(self, line: str = "") -> None:
        logger.debug(f"send: {line}")
        data = bytearray(line.encode("utf-8"))
        data.append(0x0A)
        try:
            self._write_command(data)
        finally:
            zero_buffer(data)

    def send_password(self, password: SecureString | None, owns_password: bool = False) -> None:
        """Send a password line. An empty line is sent when ``password`` is None."""
        logger.debug("send: ****")
        data = password.encode_line() if password is not None else bytearray(b"\n")
        try:
            self._write_command(data)
        finally:
            zero_buffer(data)
            if owns_password and password is not None:
                password.clear()

    def _write_command(self, data: bytearray) -> None:
        with self._write_lock:
            if self._channel is not None:
                self._channel.sendall(data)
            elif self._interactive:
                write_all(self.stdin, data)
            else:
                raise RuntimeError("The command channel is not open")

    # Synchronous reads for interactive sessions

    def read_line(self) -> tuple[str | None, StatusEvent | None] | None:
        """Return the next ``(text, None)`` or ``(None, event)``, or None at end of stream.

        Status lines with unknown keywords are skipped. Blocks for at most one
        underlying read per call when nothing is buffered.
        """
        if self._stdout_framer is None or self._stdout_buffer is None:
            raise RuntimeError("read_line() requires an interactive session")

        while True:
            while self._pending:
                frame = self._pending.popleft()
                if isinstance(frame, StatusLine):
                    event = decode_status(frame.keyword, frame.arguments)
                    if event is not None:
                        return None, event
                else:
                    return frame, None

            count = self.stdout.readinto(self._stdout_buffer)  # type: ignore[attr-defined]
            if not count:
                frames = self._stdout_framer.finish()
                if not frames:
                    return None
                self._pending.extend(frames)
                continue
            view = memoryview(self._stdout_buffer)[:count]
            try:
                self._pending.extend(self._stdout_framer.feed(view))
            finally:
                view.release()
                self._stdout_buffer[:count] = bytes(count)

    # Background readers

    def _spawn_reader(self, name: str, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=f"gpg-{name}", daemon=True)
        self._readers.append(thread)
        thread.start()

    def _spawn_pipe_reader(
        self,
        name: str,
        stream: IO[bytes],
        handling: StreamHandling,
        handler: LineHandler | None,
    ) -> None:
        framer = LineFramer(FramingMode.PLAIN) if handling == StreamHandling.PROCESS_TEXT else None
        self._spawn_reader(name, self._read_pipe, stream, framer, handler)

    def _read_pipe(
        self, stream: IO[bytes], framer: LineFramer | None, handler: LineHandler | None
    ) -> None:
        buffer = bytearray(READ_CHUNK_SIZE)
        self._buffers.append(buffer)
        if framer is not None:
            self._framers.append(framer)
        try:
            while True:
                try:
                    count = stream.readinto(buffer)  # type: ignore[attr-defined]
                except (OSError, ValueError):
                    break  # Closed during dispose
                if not count:
                    break
                if framer is not None:
                    for line in framer.feed(memoryview(buffer)[:count]):
                        self._dispatch_line(handler, line)
                buffer[:count] = bytes(count)
            if framer is not None:
                for line in framer.finish():
                    self._dispatch_line(handler, line)
        finally:
            zero_buffer(buffer)

    def _read_status(self, framer: LineFramer) -> None:
        assert self._channel is not None
        channel = self._channel
        buffer = bytearray(READ_CHUNK_SIZE)
        self._buffers.append(buffer)
        self._framers.append(framer)
        try:
            while True:
                try:
                    count = channel.recv_into(buffer)
                except OSError:
                    break  # Shut down during wait_for_exit or dispose
                if not count:
                    break
                for frame in framer.feed(memoryview(buffer)[:count]):
                    self._dispatch_status(frame)
                buffer[:count] = bytes(count)
            for frame in framer.finish():
                self._dispatch_status(frame)
        finally:
            zero_buffer(buffer)

    def _dispatch_line(self, handler: LineHandler | None, line: Frame) -> None:
        if handler is None or not isinstance(line, str):
            return
        try:
            handler(line)
        except Exception as e:
            self._record_handler_error(e)

    def _dispatch_status(self, frame: Frame) -> None:
        if not isinstance(frame, StatusLine):
            return
        event = decode_status(frame.keyword, frame.arguments)
        if event is None:
            return
        logger.debug(f"status: {event.kind.name}")
        handler = self.on_prompt if event.is_input_request and self.on_prompt else self.on_status
        if handler is None:
            return
        try:
            handler(event)
        except Exception as e:
            self._record_handler_error(e)

    def _record_handler_error(self, error: Exception) -> None:
        # The caller's thread discovers the error after wait_for_exit()
        logger.error(f"Error handling gpg output: {error}")
        if self._handler_error is None:
            self._handler_error = error
        self.kill()

    def _shutdown_channel(self) -> None:
        if self._channel is None:
            return
        try:
            self._channel.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Already disconnected

    def _close_channel(self) -> None:
        if self._channel is None:
            return
        self._shutdown_channel()
        self._channel.close()


def write_all(stream: IO[bytes], data: bytes | bytearray | memoryview) -> None:
    """Write everything to an unbuffered pipe, which may accept partial writes."""
    view = memoryview(data)
    try:
        while view:
            written = stream.write(view)
            view = view[written or 0 :]
        stream.flush()
    finally:
        view.release()
