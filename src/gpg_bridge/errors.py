"""Error types raised by gpg-bridge.

Every error carries a category and a list of recovery hints. Operation
failures also carry the :class:`FailureReason` flags gathered from gpg's
status output and diagnostics, and the exit code gpg returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, auto
from pathlib import Path

from .types import FailureReason, describe_failure


class ErrorCategory(Enum):
    ENVIRONMENT = auto()  # Missing or broken gpg executable
    OPERATION = auto()  # gpg reported a failed operation
    PROTOCOL = auto()  # gpg asked something nobody anticipated
    USER_INPUT = auto()  # Declined password prompts
    NETWORK = auto()  # Keyserver operations
    INTERNAL = auto()


@dataclass
class RecoveryHint:
    """Something the user can try, optionally with the command to run."""

    action: str
    command: str | None = None
    documentation_url: str | None = None

    def __str__(self) -> str:
        parts = [self.action]
        if self.command:
            parts.append(f"  Command: {self.command}")
        if self.documentation_url:
            parts.append(f"  See: {self.documentation_url}")
        return "\n".join(parts)


@dataclass
class GPGBridgeError(Exception):
    message: str
    category: ErrorCategory
    recovery_hints: list[RecoveryHint] = field(default_factory=list)
    cause: Exception | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        return self.message

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def format_full(self) -> str:
        """The message, its cause and a numbered list of recovery hints."""
        text = f"Error: {self.message}"
        if self.cause:
            text += f"\nCaused by: {self.cause}"
        if self.recovery_hints:
            numbered = (f"  {n}. {hint}" for n, hint in enumerate(self.recovery_hints, start=1))
            text += "\n\nRecovery options:\n" + "\n".join(numbered)
        return text


REASON_HINTS: dict[FailureReason, RecoveryHint] = {
    FailureReason.KEYRING_LOCKED: RecoveryHint(
        "Make sure no other gpg process is using the keyring",
        command="gpgconf --kill all",
    ),
    FailureReason.BAD_PASSWORD: RecoveryHint("Check the passphrase and try again"),
    FailureReason.MISSING_PUBLIC_KEY: RecoveryHint(
        "Import the missing public key", command="gpg --recv-keys <key-id>"
    ),
    FailureReason.MISSING_SECRET_KEY: RecoveryHint(
        "Check the secret key is available", command="gpg --list-secret-keys"
    ),
    FailureReason.UNTRUSTED_RECIPIENT: RecoveryHint(
        "Certify the recipient key or set its owner trust"
    ),
    FailureReason.UNSUPPORTED_ALGORITHM: RecoveryHint(
        "List the algorithms this gpg supports", command="gpg --version"
    ),
}


class OperationFailedError(GPGBridgeError):
    """A gpg operation exited with a failure code.

    ``reasons`` carries every suspected cause accumulated during the session;
    it may be empty when nothing could be deduced.
    """

    operation = "Operation"

    def __init__(
        self,
        reasons: FailureReason = FailureReason.NONE,
        extra: str | None = None,
        exit_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        message = f"{self.operation} failed."
        descriptions = describe_failure(reasons)
        if descriptions:
            message += " Possible causes: " + "; ".join(descriptions) + "."
        elif exit_code is not None:
            message += f" gpg exited with code {exit_code}."
        if extra:
            message += f" {extra}"

        hints = [hint for flag, hint in REASON_HINTS.items() if flag in reasons]
        super().__init__(
            message=message,
            category=ErrorCategory.OPERATION,
            recovery_hints=hints,
            cause=cause,
        )
        self.reasons = reasons
        self.exit_code = exit_code


class EncryptionFailedError(OperationFailedError):
    operation = "Encryption"


class DecryptionFailedError(OperationFailedError):
    operation = "Decryption"


class SigningFailedError(OperationFailedError):
    operation = "Signing"


class VerificationFailedError(OperationFailedError):
    operation = "Verification"


class ImportFailedError(OperationFailedError):
    operation = "Key import"


class ExportFailedError(OperationFailedError):
    operation = "Key export"


class KeyCreationFailedError(OperationFailedError):
    operation = "Key creation"


class KeyEditFailedError(OperationFailedError):
    operation = "Key edit"


class KeyListingFailedError(OperationFailedError):
    operation = "Key listing"


class RevocationFailedError(OperationFailedError):
    operation = "Key revocation"


class HashFailedError(OperationFailedError):
    operation = "Hashing"


class RandomDataError(OperationFailedError):
    operation = "Random data generation"


class KeyServerError(OperationFailedError):
    operation = "Keyserver operation"

    def __init__(
        self,
        reasons: FailureReason = FailureReason.NONE,
        extra: str | None = None,
        exit_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(reasons, extra, exit_code, cause)
        self.category = ErrorCategory.NETWORK


class ProtocolViolationError(GPGBridgeError):
    """gpg asked for input that no handler anticipated, or rejected an answer."""

    def __init__(self, message: str, prompt_id: str | None = None) -> None:
        super().__init__(
            message=message,
            category=ErrorCategory.PROTOCOL,
            recovery_hints=[
                RecoveryHint("Check the installed gpg version", command="gpg --version"),
            ],
        )
        self.prompt_id = prompt_id


class OperationCancelledError(GPGBridgeError):
    """Error when the user declines a password prompt."""

    def __init__(self, message: str = "Operation cancelled by user") -> None:
        super().__init__(message=message, category=ErrorCategory.USER_INPUT)


class ExecutableError(GPGBridgeError):
    """The gpg executable is missing or cannot be run."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(
            message=message,
            category=ErrorCategory.ENVIRONMENT,
            recovery_hints=[
                RecoveryHint("Install GnuPG", command="apt install gnupg"),
                RecoveryHint("Point GPG_BRIDGE_EXECUTABLE at the gpg binary"),
            ],
            cause=cause,
        )


# Error logging


class ErrorLogger:
    """Appends failed operations to a log file, one line per error.

    Cancelled password prompts are the user's choice and are not logged.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path or Path.home() / ".gpg-bridge" / "errors.log"
        self._logger = logging.getLogger("gpg-bridge.errors")
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

        handler = logging.FileHandler(self._log_path, encoding="utf-8", delay=True)
        handler.setLevel(logging.WARNING)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        self._logger.addHandler(handler)
        self._logger.setLevel(logging.WARNING)
        self._handler = handler

    def log_error(self, error: GPGBridgeError) -> None:
        if isinstance(error, OperationCancelledError):
            return
        details = [f"[{error.category.name}] {error.message}"]
        if isinstance(error, OperationFailedError) and error.exit_code is not None:
            details.append(f"exit code {error.exit_code}")
        if isinstance(error, ProtocolViolationError) and error.prompt_id:
            details.append(f"prompt {error.prompt_id}")
        if error.cause:
            details.append(f"cause: {error.cause}")
        self._logger.error(" | ".join(details))
        self._handler.flush()

    def get_recent_errors(self, count: int = 10) -> list[str]:
        if not self._log_path.exists():
            return []
        return self._log_path.read_text(encoding="utf-8").splitlines()[-count:]

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()


# gpg diagnostics and what usually fixes them

COMMON_ERROR_PATTERNS: dict[str, list[RecoveryHint]] = {
    "gpg-agent": [
        RecoveryHint("Restart gpg-agent", command="gpgconf --kill all"),
        RecoveryHint("Check socket permissions in the GnuPG home"),
    ],
    "pinentry": [
        RecoveryHint("Allow loopback pinentry in gpg-agent.conf"),
    ],
    "no such file": [
        RecoveryHint("Ensure the GnuPG home directory exists"),
    ],
    "permission denied": [
        RecoveryHint("Check GnuPG home directory permissions (0700)"),
    ],
}


def get_recovery_hints_for_message(error_message: str) -> list[RecoveryHint]:
    lowered = error_message.lower()
    return [
        hint
        for pattern, hints in COMMON_ERROR_PATTERNS.items()
        if pattern in lowered
        for hint in hints
    ]


def wrap_exception(
    exception: Exception,
    category: ErrorCategory = ErrorCategory.INTERNAL,
) -> GPGBridgeError:
    """Wrap a foreign exception, adding hints matched from its message."""
    message = str(exception)
    return GPGBridgeError(
        message=message,
        category=category,
        recovery_hints=get_recovery_hints_for_message(message),
        cause=exception,
    )
