from __future__ import annotations

import getpass
import logging
from typing import Protocol

from rich.console import Console
from rich.prompt import Confirm

from .process import ProcessSession
from .state import SessionState
from .status import KeyIdEvent, NeedPassphraseEvent, StatusEvent, StatusKind
from .types import SecureString

logger = logging.getLogger("gpg-bridge.passwords")


class PasswordCallbacks(Protocol):
    """Supplies passwords when nothing pre-supplied is left to try."""

    def get_key_password(self, key_id: str, hint: str) -> SecureString | None: ...

    def get_cipher_password(self) -> SecureString | None: ...

    def get_pin(self, hint: str) -> SecureString | None: ...

    def on_invalid_password(self, key_id: str | None) -> None: ...


class ConsolePasswordCallbacks:
    """Ask on the terminal. Returning None from a getter cancels the operation."""

    def __init__(self, console: Console | None = None, allow_empty: bool = False) -> None:
        self._console = console or Console()
        self._allow_empty = allow_empty

    def _ask(self, prompt: str) -> SecureString | None:
        try:
            value = getpass.getpass(f"{prompt}: ")
        except (EOFError, KeyboardInterrupt):
            self._console.print()
            return None
        if not value and not self._allow_empty:
            if not Confirm.ask("Continue without a passphrase?", default=False):
                return None
        return SecureString(value)

    def get_key_password(self, key_id: str, hint: str) -> SecureString | None:
        self._console.print(f"[cyan]A passphrase is needed to unlock the secret key for[/cyan] {hint}")
        return self._ask("Passphrase")

    def get_cipher_password(self) -> SecureString | None:
        self._console.print("[cyan]A passphrase is needed for symmetric encryption[/cyan]")
        return self._ask("Passphrase")

    def get_pin(self, hint: str) -> SecureString | None:
        self._console.print(f"[cyan]Enter the PIN for[/cyan] {hint}")
        return self._ask("PIN")

    def on_invalid_password(self, key_id: str | None) -> None:
        target = f" for key 0x{key_id}" if key_id else ""
        self._console.print(f"[red]Bad passphrase{target}[/red]")


class StaticPasswordCallbacks:
    """Scripted callbacks - returns pre-configured answers in order."""

    def __init__(
        self,
        key_passwords: list[str | None] | None = None,
        cipher_passwords: list[str | None] | None = None,
        pins: list[str | None] | None = None,
    ) -> None:
        self._key_passwords = list(key_passwords or [])
        self._cipher_passwords = list(cipher_passwords or [])
        self._pins = list(pins or [])
        self.requests: list[str] = []
        self.invalid_passwords: list[str | None] = []

    @staticmethod
    def _next(answers: list[str | None]) -> SecureString | None:
        if not answers:
            return None
        value = answers.pop(0)
        return SecureString(value) if value is not None else None

    def get_key_password(self, key_id: str, hint: str) -> SecureString | None:
        self.requests.append(hint)
        return self._next(self._key_passwords)

    def get_cipher_password(self) -> SecureString | None:
        self.requests.append("symmetric")
        return self._next(self._cipher_passwords)

    def get_pin(self, hint: str) -> SecureString | None:
        self.requests.append(hint)
        return self._next(self._pins)

    def on_invalid_password(self, key_id: str | None) -> None:
        self.invalid_passwords.append(key_id)


class PasswordBroker:
    """Answers ``passphrase.enter`` prompts for one session.

    Attempts, in order: the password supplied with the operation (once per
    key, or once for the symmetric passphrase), the session's default
    password, then the callbacks. A declined
    callback sends an empty answer and marks the session cancelled; gpg
    usually follows with a specific failure that is worth reporting.
    """

    def __init__(
        self,
        state: SessionState,
        callbacks: PasswordCallbacks | None = None,
        key_password: SecureString | None = None,
        cipher_password: SecureString | None = None,
    ) -> None:
        self.state = state
        self.callbacks = callbacks
        self.key_password = key_password
        self.cipher_password = cipher_password
        self._tried_operation_password: set[str] = set()
        self._tried_default_password: set[str] = set()

    def handle_status(self, event: StatusEvent) -> None:
        """Default status handling plus the bad-password bookkeeping."""
        self.state.handle_status(event)
        if event.kind == StatusKind.BAD_PASSPHRASE:
            self.on_bad_password(event.key_id if isinstance(event, KeyIdEvent) else None)

    def on_bad_password(self, key_id: str | None) -> None:
        # Do not retry a default password that gpg just rejected
        self.state.clear_default_password()
        if self.state.cancelled:
            return
        logger.info(f"gpg rejected the passphrase for {key_id or 'the request'}")
        if self.callbacks is not None:
            self.callbacks.on_invalid_password(key_id or None)

    def answer(self, session: ProcessSession) -> None:
        """Send the answer to the password prompt gpg is waiting on."""
        if self.state.cancelled:
            # Stop gpg from prompting again after the user declined
            logger.debug("Password requested after cancellation; killing gpg")
            session.send_line()
            session.kill()
            return

        request = self.state.password_request
        password, owned = self._choose_password(request)
        if password is None:
            logger.info("Password prompt declined")
            self.state.mark_cancelled()
            session.send_line()
            return
        session.send_password(password, owns_password=owned)

    def _choose_password(self, request: StatusEvent | None) -> tuple[SecureString | None, bool]:
        slot = self._request_slot(request)

        operation_password = self.cipher_password if slot == "symmetric" else self.key_password
        if operation_password and slot not in self._tried_operation_password:
            self._tried_operation_password.add(slot)
            return operation_password, False

        default = self.state.default_password
        if (
            default is not None
            and slot not in self._tried_default_password
            and not (request is not None and request.kind == StatusKind.NEED_CIPHER_PASSPHRASE)
        ):
            self._tried_default_password.add(slot)
            return default, False

        if self.callbacks is None:
            return None, False
        if isinstance(request, NeedPassphraseEvent):
            hint = self.describe_key_request(request)
            return self.callbacks.get_key_password(request.key_id, hint), True
        if request is not None and request.kind == StatusKind.NEED_PIN:
            return self.callbacks.get_pin(self.state.password_hint or "the smartcard"), True
        return self.callbacks.get_cipher_password(), True

    def describe_key_request(self, request: NeedPassphraseEvent) -> str:
        hint = f"{self.state.password_hint or 'unknown user'} [0x{request.key_id}"
        if request.key_id != request.primary_key_id:
            hint += f" on primary key 0x{request.primary_key_id}"
        return hint + "]"

    @staticmethod
    def _request_slot(request: StatusEvent | None) -> str:
        if isinstance(request, NeedPassphraseEvent):
            return request.key_id
        if request is not None and request.kind == StatusKind.NEED_PIN:
            return "pin"
        return "symmetric"
