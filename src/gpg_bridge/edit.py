"""Driving gpg's interactive ``--edit-key`` menu.

An :class:`EditSession` runs gpg in interactive mode and answers its prompts
with a FIFO queue of :class:`EditCommand` objects. Only the command at the
head of the queue may answer a prompt. Commands that need follow-up work
(for example making a freshly added user ID primary) enqueue further
commands right behind themselves.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from .config import GPGConfig
from .errors import KeyEditFailedError, OperationCancelledError, ProtocolViolationError
from .keylisting import EditKey, EditKeyBuilder
from .passwords import PasswordBroker, PasswordCallbacks
from .process import ProcessSession
from .state import SessionState
from .status import InputRequestEvent, StatusEvent
from .types import SecureString

logger = logging.getLogger("gpg-bridge.edit")

MENU_PROMPT = "keyedit.prompt"
PASSWORD_PROMPT = "passphrase.enter"


class Transition(Enum):
    CONTINUE = "continue"  # Prompt answered, the command stays at the head of the queue
    DONE = "done"  # Prompt answered, the command is finished
    NEXT = "next"  # Prompt not answered, the command is finished


@dataclass
class EditContext:
    """What a command can see and do while it is at the head of the queue."""

    session: ProcessSession
    state: SessionState
    passwords: PasswordBroker
    queue: deque[EditCommand] = field(default_factory=deque)
    original: EditKey | None = None
    current: EditKey | None = None

    def send_line(self, line: str = "") -> None:
        self.session.send_line(line)

    def send_password(self, password: SecureString | None) -> None:
        self.session.send_password(password)

    def answer_password(self) -> None:
        self.passwords.answer(self.session)

    def enqueue_follow_up(self, *commands: EditCommand) -> None:
        """Queue ``commands`` to run right after the active command, in order."""
        for offset, command in enumerate(commands, 1):
            self.queue.insert(offset, command)

    def require_listing(self) -> EditKey:
        if self.current is None:
            raise ProtocolViolationError("gpg has not listed the key being edited")
        return self.current


class EditCommand:
    """One step of a key edit.

    ``on_prompt`` receives the id of every prompt gpg shows while the command
    is active, including ``keyedit.prompt`` itself. ``on_line`` receives plain
    output lines that are not part of a key listing.
    """

    # Relist the key before the command first acts, unless nothing changed
    needs_listing = False
    # Answer passphrase.enter itself instead of leaving it to the session
    handles_passwords = False
    # Prompts gpg legitimately asks several times in a row
    repeatable_prompts: frozenset[str] = frozenset()

    def on_prompt(self, ctx: EditContext, prompt_id: str) -> Transition:
        raise NotImplementedError

    def on_line(self, ctx: EditContext, line: str) -> None:
        pass

    def __repr__(self) -> str:
        return type(self).__name__


class EditSession:
    """Runs ``gpg --edit-key`` until the command queue is exhausted and gpg exits."""

    def __init__(
        self,
        config: GPGConfig,
        key: str,
        commands: Iterable[EditCommand],
        *,
        callbacks: PasswordCallbacks | None = None,
        default_password: SecureString | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self._config = config
        self._key = key
        self._commands = list(commands)
        self._extra_args = list(extra_args or [])
        self.state = SessionState(default_password=default_password)
        self._passwords = PasswordBroker(self.state, callbacks)
        self._active: EditCommand | None = None
        self._listing_fresh = False
        self._listing_stale = True
        self._last_prompt: str | None = None

    @property
    def args(self) -> list[str]:
        return [*self._extra_args, "--ask-cert-level", "--expert", "--edit-key", self._key]

    def run(self) -> EditKey | None:
        """Run the edit. Returns the last listing gpg printed.

        Raises ``OperationCancelledError`` when a password prompt was declined,
        ``KeyEditFailedError`` when gpg exits unsuccessfully, and
        ``ProtocolViolationError`` when gpg asks something no command expects.
        """
        session = ProcessSession(
            self._config,
            self.args,
            interactive=True,
            on_stderr_line=self.state.handle_stderr_line,
        )
        ctx = EditContext(
            session=session,
            state=self.state,
            passwords=self._passwords,
            queue=deque(self._commands),
        )
        with session:
            session.start()
            try:
                self._loop(ctx)
            except BaseException:
                session.kill()
                raise
            exit_code = session.wait_for_exit()
            session.raise_handler_error()

        self.state.clear_default_password()
        if self.state.cancelled:
            raise OperationCancelledError("A password prompt was declined")
        if not session.successful_exit:
            raise KeyEditFailedError(self.state.failure_reasons, exit_code=exit_code)
        return ctx.current

    def _loop(self, ctx: EditContext) -> None:
        builder: EditKeyBuilder | None = None
        while True:
            item = ctx.session.read_line()
            if item is None:
                break
            text, event = item

            if text is not None:
                if builder is not None and builder.feed(text):
                    continue
                if builder is not None:
                    self._finish_listing(ctx, builder)
                    builder = None
                if EditKeyBuilder.starts_listing(text):
                    builder = EditKeyBuilder()
                    builder.feed(text)
                elif text.strip():
                    self._last_prompt = None
                    if ctx.queue:
                        ctx.queue[0].on_line(ctx, text)
                continue

            if builder is not None:
                self._finish_listing(ctx, builder)
                builder = None
            assert event is not None
            if isinstance(event, InputRequestEvent):
                self._handle_prompt(ctx, event.prompt_id)
                if self.state.cancelled:
                    ctx.session.kill()
                    break
            else:
                self._handle_status(event)

        if builder is not None:
            self._finish_listing(ctx, builder)

    def _handle_status(self, event: StatusEvent) -> None:
        self._passwords.handle_status(event)

    def _finish_listing(self, ctx: EditContext, builder: EditKeyBuilder) -> None:
        ctx.current = builder.freeze()
        if ctx.original is None:
            ctx.original = ctx.current
        self._listing_fresh = True
        self._listing_stale = False

    def _activate(self, command: EditCommand) -> None:
        if command is self._active:
            return
        self._active = command
        self._last_prompt = None
        # The listing only counts as fresh if nothing was sent since it was printed
        self._listing_fresh = not self._listing_stale
        logger.debug(f"Active edit command: {command!r}")

    def _handle_prompt(self, ctx: EditContext, prompt_id: str) -> None:
        logger.debug(f"prompt: {prompt_id}")
        while True:
            if not ctx.queue:
                if prompt_id != MENU_PROMPT:
                    break
                from .edit_commands import QuitCommand

                ctx.queue.append(QuitCommand(save=True))

            command = ctx.queue[0]
            self._activate(command)

            if prompt_id == PASSWORD_PROMPT and not command.handles_passwords:
                break

            if prompt_id == MENU_PROMPT and command.needs_listing and not self._listing_fresh:
                ctx.send_line("list")
                self._listing_stale = True
                return

            if prompt_id != MENU_PROMPT:
                if prompt_id == self._last_prompt and prompt_id not in command.repeatable_prompts:
                    raise ProtocolViolationError(
                        f"gpg asked {prompt_id} twice; it rejected the answer from {command!r}",
                        prompt_id,
                    )
                self._last_prompt = prompt_id
            else:
                self._last_prompt = None

            transition = command.on_prompt(ctx, prompt_id)
            if transition is Transition.CONTINUE:
                self._listing_stale = True
                return
            ctx.queue.popleft()
            self._active = None
            if transition is Transition.DONE:
                self._listing_stale = True
                return

        self._base_prompt(ctx, prompt_id)

    def _base_prompt(self, ctx: EditContext, prompt_id: str) -> None:
        if prompt_id == PASSWORD_PROMPT:
            ctx.answer_password()
            return
        logger.error(f"Unexpected gpg prompt during key edit: {prompt_id}")
        raise ProtocolViolationError(f"gpg asked an unexpected question: {prompt_id}", prompt_id)
