"""Per-invocation state accumulated from status events and stderr."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .status import (
    DeleteProblemEvent,
    DeleteProblemReason,
    ErrorSignatureEvent,
    InvalidRecipientEvent,
    InvalidRecipientReason,
    StatusEvent,
    StatusKind,
    UserIdHintEvent,
)
from .types import FailureReason, SecureString

logger = logging.getLogger("gpg-bridge.state")

# Substrings of gpg's (English) diagnostics and what they suggest. The wording is
# not a stable interface, so an unmatched line simply leaves no flag behind.
STDERR_FAILURE_PATTERNS: tuple[tuple[str, FailureReason], ...] = (
    (" file write error", FailureReason.KEYRING_LOCKED),
    (" file rename error", FailureReason.KEYRING_LOCKED),
    (" already in secret keyring", FailureReason.SECRET_KEY_ALREADY_EXISTS),
    ("not found on keyserver", FailureReason.KEY_NOT_FOUND),
    (" Bad passphrase", FailureReason.BAD_PASSWORD),
    (" Operation cancelled", FailureReason.OPERATION_CANCELED),
)

PASSWORD_REQUEST_KINDS = frozenset(
    {StatusKind.NEED_KEY_PASSPHRASE, StatusKind.NEED_CIPHER_PASSPHRASE, StatusKind.NEED_PIN}
)


def classify_stderr_line(line: str) -> FailureReason:
    reasons = FailureReason.NONE
    for pattern, reason in STDERR_FAILURE_PATTERNS:
        if pattern in line:
            reasons |= reason
    return reasons


@dataclass
class SessionState:
    """Mutable state for one gpg invocation.

    Status events arrive on the status reader thread and stderr lines on the
    stderr reader thread, so flag updates are serialized with a lock. Failure
    flags only ever accumulate.
    """

    default_password: SecureString | None = None
    failure_reasons: FailureReason = FailureReason.NONE
    password_hint: str | None = None
    password_request: StatusEvent | None = None
    cancelled: bool = False
    invalid_recipients: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_failure(self, reason: FailureReason) -> None:
        if not reason:
            return
        with self._lock:
            self.failure_reasons |= reason

    def has_failure(self, reason: FailureReason) -> bool:
        return reason in self.failure_reasons

    def mark_cancelled(self) -> None:
        self.cancelled = True
        self.add_failure(FailureReason.OPERATION_CANCELED)

    def clear_default_password(self) -> None:
        if self.default_password is not None:
            self.default_password.clear()
            self.default_password = None

    def handle_stderr_line(self, line: str) -> None:
        logger.debug(f"gpg: {line}")
        self.add_failure(classify_stderr_line(line))

    def handle_status(self, event: StatusEvent) -> None:
        """Default handling shared by every operation."""
        kind = event.kind
        if kind in PASSWORD_REQUEST_KINDS:
            self.password_request = event
        elif isinstance(event, UserIdHintEvent):
            self.password_hint = event.hint
        elif isinstance(event, InvalidRecipientEvent):
            reasons = FailureReason.INVALID_RECIPIENTS
            if event.reason == InvalidRecipientReason.NOT_TRUSTED:
                reasons |= FailureReason.UNTRUSTED_RECIPIENT
            self.add_failure(reasons)
            self.invalid_recipients.append(f"Invalid recipient {event.recipient}. {event.reason_text}")
        elif kind == StatusKind.BAD_PASSPHRASE:
            self.add_failure(FailureReason.BAD_PASSWORD)
        elif kind == StatusKind.MISSING_PASSPHRASE:
            self.add_failure(FailureReason.BAD_PASSWORD)
        elif kind == StatusKind.NO_PUBLIC_KEY:
            self.add_failure(FailureReason.MISSING_PUBLIC_KEY)
        elif kind == StatusKind.NO_SECRET_KEY:
            self.add_failure(FailureReason.MISSING_SECRET_KEY)
        elif kind in (StatusKind.UNEXPECTED_DATA, StatusKind.NO_DATA, StatusKind.BAD_ARMOR):
            self.add_failure(FailureReason.BAD_DATA)
        elif isinstance(event, DeleteProblemEvent):
            if event.reason == DeleteProblemReason.NO_SUCH_KEY:
                self.add_failure(FailureReason.KEY_NOT_FOUND)
        elif isinstance(event, ErrorSignatureEvent):
            if event.missing_key:
                self.add_failure(FailureReason.MISSING_PUBLIC_KEY)
            if event.unsupported_algorithm:
                self.add_failure(FailureReason.UNSUPPORTED_ALGORITHM)
