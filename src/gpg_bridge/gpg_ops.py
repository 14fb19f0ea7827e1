"""The operations facade: one method per gpg operation.

Every public method returns a :class:`Result`. Errors are
:class:`OperationFailedError` subclasses carrying the failure reasons
gathered while gpg ran, :class:`OperationCancelledError` when a password
prompt was declined, :class:`ProtocolViolationError` when gpg asked something
unexpected, :class:`ExecutableError` when gpg could not be started, or
``ValueError`` for arguments gpg would reject.
"""

from __future__ import annotations

import io
import logging
import re
import tempfile
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import BinaryIO, TypeVar

from .config import Capabilities, GPGConfig, detect_capabilities
from .edit import PASSWORD_PROMPT, EditCommand, EditSession
from .edit_commands import (
    AddPhotoCommand,
    AddRevokerCommand,
    AddSubkeyCommand,
    AddUidCommand,
    ChangePasswordCommand,
    CleanCommand,
    DeleteSignaturesCommand,
    DeleteSubkeyCommand,
    DeleteUidCommand,
    DisableCommand,
    EnableCommand,
    ExpireCommand,
    MinimizeCommand,
    QuitCommand,
    RevocationReasonAnswers,
    RevokeSignaturesCommand,
    RevokeSubkeyCommand,
    RevokeUidCommand,
    SelectSubkeyCommand,
    SelectUidCommand,
    SetPreferencesCommand,
    SetPrimaryUidCommand,
    SetTrustCommand,
    ShowPreferencesCommand,
    SignKeyCommand,
    UserIdSelector,
    parse_preferences,
    resolve_user_id,
)
from .errors import (
    DecryptionFailedError,
    EncryptionFailedError,
    ErrorCategory,
    ErrorLogger,
    ExportFailedError,
    GPGBridgeError,
    HashFailedError,
    ImportFailedError,
    KeyCreationFailedError,
    KeyEditFailedError,
    KeyListingFailedError,
    KeyServerError,
    OperationCancelledError,
    OperationFailedError,
    ProtocolViolationError,
    RandomDataError,
    RevocationFailedError,
    SigningFailedError,
    VerificationFailedError,
    wrap_exception,
)
from .framing import percent_decode
from .keylisting import EditKey, KeyListingParser, colon_field
from .options import (
    DecryptionOptions,
    EncryptionOptions,
    ExportOptions,
    ImportOptions,
    KeyDeletion,
    KeyServerOptions,
    KeySigningOptions,
    ListingSignatures,
    NewKeyOptions,
    OutputFormat,
    OutputOptions,
    Randomness,
    RevocationReason,
    SigningOptions,
    UserPreferences,
    VerificationOptions,
    export_args,
    import_args,
)
from .passwords import PasswordBroker, PasswordCallbacks
from .process import ProcessSession, StreamHandling, write_all
from .pump import copy_stream, pump
from .state import SessionState
from .status import (
    ErrorSignatureEvent,
    ImportOkayEvent,
    ImportProblemEvent,
    ImportReason,
    InputRequestEvent,
    KeyCreatedEvent,
    SignatureEvent,
    StatusEvent,
    StatusKind,
    TrustLevelEvent,
    ValidSignatureEvent,
    parse_key_type,
    parse_optional_timestamp,
)
from .types import (
    FailureReason,
    ImportedKey,
    KeyCapability,
    KeyServerKey,
    KeySignature,
    PrimaryKey,
    Result,
    SecureString,
    Signature,
    SignatureBuilder,
    SignatureStatus,
    TrustLevel,
    zero_buffer,
)

logger = logging.getLogger("gpg-bridge.gpg_ops")

T = TypeVar("T")

KeyRef = PrimaryKey | str
"""A key object, or anything gpg accepts as a key specifier (preferably a fingerprint)."""

Answers = Callable[[str], str | None]

READY_POLL_SECONDS = 0.05
MIN_EXPIRATION = timedelta(seconds=30)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_HEX_DIGITS = re.compile(r"^[0-9A-Fa-f]+$")
_NOT_FOUND_MESSAGES = (
    " public key not found",
    " secret key not found",
    "No public key",
    "No secret key",
)


def key_spec(key: KeyRef) -> str:
    if isinstance(key, PrimaryKey):
        return key.fingerprint or key.key_id
    return key


def parse_digest(output: str) -> bytes:
    """Extract the digest from ``--print-md`` output.

    gpg groups the hex digits with spaces and may wrap them, prefixing the
    first line with the file name and a colon.
    """
    digits = "".join(line.rsplit(":", 1)[-1] for line in output.splitlines())
    digits = re.sub(r"\s+", "", digits)
    if not digits or len(digits) % 2 or not _HEX_DIGITS.match(digits):
        return b""
    return bytes.fromhex(digits)


def parse_keyserver_listing(lines: Sequence[str]) -> list[KeyServerKey]:
    """Parse the ``pub:``/``uid:`` records printed by ``--search-keys`` in colon mode."""
    keys: list[KeyServerKey] = []
    current: dict | None = None

    def finish() -> None:
        if current is not None:
            keys.append(KeyServerKey(**current))

    for line in lines:
        fields = line.rstrip("\r\n").split(":")
        record = fields[0]
        if record == "pub":
            finish()
            flags = colon_field(fields, 6)
            length = colon_field(fields, 3)
            current = {
                "key_id": colon_field(fields, 1).upper(),
                "key_type": parse_key_type(colon_field(fields, 2)),
                "length": int(length) if length.isdigit() else 0,
                "creation_time": parse_optional_timestamp(colon_field(fields, 4) or None),
                "expiration_time": parse_optional_timestamp(colon_field(fields, 5) or None),
                "revoked": "r" in flags,
                "expired": "e" in flags,
                "disabled": "d" in flags,
                "user_ids": (),
            }
        elif record == "uid" and current is not None:
            name = percent_decode(colon_field(fields, 1))
            if name:
                current["user_ids"] = (*current["user_ids"], name)
    finish()
    return keys


class _SignatureCollector:
    """Turns the signature status events of a decrypt or verify into :class:`Signature` records.

    NEWSIG, GOODSIG, BADSIG and ERRSIG each start a new signature; the previous
    one is kept only if it got far enough to say something about its status.
    """

    _STARTS = frozenset(
        {StatusKind.NEW_SIG, StatusKind.GOOD_SIG, StatusKind.BAD_SIG, StatusKind.ERROR_SIG}
    )
    _FLAGS = {
        StatusKind.EXPIRED_SIG: SignatureStatus.EXPIRED_SIGNATURE,
        StatusKind.EXPIRED_KEY_SIG: SignatureStatus.EXPIRED_KEY,
        StatusKind.REVOKED_KEY_SIG: SignatureStatus.REVOKED_KEY,
    }

    def __init__(self) -> None:
        self.signatures: list[Signature] = []
        self._current = SignatureBuilder()

    def handle(self, event: StatusEvent) -> None:
        if isinstance(event, TrustLevelEvent):
            self._current.trust_level = event.level
            return

        if event.kind in self._STARTS:
            self._add_current()
            self._current = SignatureBuilder()

        sig = self._current
        if event.kind == StatusKind.BAD_SIG and isinstance(event, SignatureEvent):
            sig.key_id, sig.user_name = event.key_id, event.user_name
            sig.status = SignatureStatus.INVALID
            sig.filled = True
        elif isinstance(event, ErrorSignatureEvent):
            sig.key_id = event.key_id
            sig.key_type = event.key_type
            sig.hash_algorithm = event.hash_algorithm
            sig.timestamp = event.timestamp
            sig.status = SignatureStatus.ERROR
            if event.missing_key:
                sig.status |= SignatureStatus.MISSING_KEY
            if event.unsupported_algorithm:
                sig.status |= SignatureStatus.UNSUPPORTED_ALGORITHM
            sig.filled = True
        elif event.kind in self._FLAGS and isinstance(event, SignatureEvent):
            sig.key_id, sig.user_name = event.key_id, event.user_name
            sig.status |= self._FLAGS[event.kind]
            # gpg 2 sends these instead of GOODSIG for a good signature
            sig.filled = True
        elif event.kind == StatusKind.GOOD_SIG and isinstance(event, SignatureEvent):
            sig.key_id, sig.user_name = event.key_id, event.user_name
            sig.status = SignatureStatus.VALID | (sig.status & SignatureStatus.valid_flag_mask())
            sig.filled = True
        elif isinstance(event, ValidSignatureEvent):
            sig.key_fingerprint = event.fingerprint
            sig.primary_key_fingerprint = event.primary_fingerprint
            sig.key_type = event.key_type
            sig.hash_algorithm = event.hash_algorithm
            sig.timestamp = event.timestamp
            sig.expiration = event.expiration

    def finish(self) -> list[Signature]:
        self._add_current()
        return list(self.signatures)

    def _add_current(self) -> None:
        if self._current.filled:
            self.signatures.append(self._current.freeze())
            self._current = SignatureBuilder()


@dataclass
class _ImportRecord:
    successful: bool = True
    secret: bool = False


class _ImportTracker:
    """Correlates IMPORT_OK and IMPORT_PROBLEM by fingerprint, in first-seen order."""

    def __init__(self) -> None:
        self._records: dict[str, _ImportRecord] = {}

    def handle(self, event: StatusEvent) -> None:
        if isinstance(event, ImportOkayEvent) and event.fingerprint:
            record = self._records.setdefault(event.fingerprint, _ImportRecord())
            if ImportReason.CONTAINS_SECRET_KEY in event.reason:
                record.secret = True
        elif isinstance(event, ImportProblemEvent) and event.fingerprint:
            self._records.setdefault(event.fingerprint, _ImportRecord()).successful = False

    @property
    def results(self) -> list[ImportedKey]:
        return [
            ImportedKey(fingerprint=fingerprint, successful=record.successful, secret=record.secret)
            for fingerprint, record in self._records.items()
        ]


class GPGOperations:
    """Runs gpg operations for one configuration.

    ``callbacks`` are asked for passwords the operation itself does not
    supply. When ``error_logger`` is set, every failed operation except a
    declined password prompt is appended to its log.
    """

    def __init__(
        self,
        config: GPGConfig | None = None,
        callbacks: PasswordCallbacks | None = None,
        error_logger: ErrorLogger | None = None,
    ) -> None:
        self.config = config or GPGConfig()
        self.callbacks = callbacks
        self.error_logger = error_logger
        self._capabilities: Capabilities | None = None

    def get_capabilities(self) -> Result[Capabilities]:
        if self._capabilities is None:
            result = detect_capabilities(self.config)
            if result.is_err():
                return result
            self._capabilities = result.unwrap()
        return Result.ok(self._capabilities)

    def _assert_supported(self, algorithm: str, kind: str) -> None:
        """Raise ValueError unless gpg lists ``algorithm`` among its ciphers or hashes."""
        result = self.get_capabilities()
        if result.is_err():
            raise wrap_exception(result.unwrap_err(), ErrorCategory.ENVIRONMENT)
        capabilities = result.unwrap()
        supported = capabilities.ciphers if kind == "cipher" else capabilities.hashes
        if not any(algorithm.upper() == name.upper() for name in supported):
            raise ValueError(f"{algorithm} is not a supported {kind}")

    # Plumbing

    def _attempt(self, operation: Callable[[], T]) -> Result[T]:
        try:
            return Result.ok(operation())
        except ValueError as e:
            logger.debug(f"Rejected arguments: {e}")
            return Result.err(e)
        except (GPGBridgeError, OSError) as e:
            # Temporary files and caller streams can fail outside gpg
            error = e
            if not isinstance(error, GPGBridgeError):
                error = wrap_exception(error, ErrorCategory.ENVIRONMENT)
            logger.debug(f"Operation failed: {error}")
            if self.error_logger is not None:
                self.error_logger.log_error(error)
            return Result.err(error)

    def _new_state(
        self,
        key_password: SecureString | None = None,
        cipher_password: SecureString | None = None,
    ) -> tuple[SessionState, PasswordBroker]:
        state = SessionState()
        broker = PasswordBroker(
            state, self.callbacks, key_password=key_password, cipher_password=cipher_password
        )
        return state, broker

    def _session(
        self,
        args: list[str],
        state: SessionState,
        broker: PasswordBroker,
        *,
        on_status: Callable[[StatusEvent], None] | None = None,
        answers: Answers | None = None,
        **kwargs,
    ) -> ProcessSession:
        session = ProcessSession(
            self.config,
            args,
            on_status=on_status or broker.handle_status,
            on_stderr_line=state.handle_stderr_line,
            **kwargs,
        )
        session.on_prompt = lambda event: self._answer_prompt(session, broker, event, answers)
        return session

    @staticmethod
    def _answer_prompt(
        session: ProcessSession,
        broker: PasswordBroker,
        event: StatusEvent,
        answers: Answers | None,
    ) -> None:
        assert isinstance(event, InputRequestEvent)
        if event.prompt_id == PASSWORD_PROMPT:
            broker.answer(session)
            return
        answer = answers(event.prompt_id) if answers is not None else None
        if answer is None:
            logger.error(f"Unexpected gpg prompt: {event.prompt_id}")
            raise ProtocolViolationError(
                f"gpg asked an unexpected question: {event.prompt_id}", event.prompt_id
            )
        session.send_line(answer)

    @staticmethod
    def _finish(
        session: ProcessSession,
        state: SessionState,
        error_type: type[OperationFailedError],
        *,
        extra: str | None = None,
        not_found_ok: bool = False,
    ) -> bool:
        """Wait for gpg and raise if it failed.

        Returns False when gpg failed only because the requested keys do not
        exist and ``not_found_ok`` is set.
        """
        exit_code = session.wait_for_exit()
        session.raise_handler_error()
        if state.cancelled:
            raise OperationCancelledError("A password prompt was declined")
        if session.successful_exit:
            return True
        if not_found_ok and state.has_failure(FailureReason.KEY_NOT_FOUND):
            return False
        if extra is None and state.invalid_recipients:
            extra = " ".join(state.invalid_recipients)
        raise error_type(state.failure_reasons, extra=extra, exit_code=exit_code)

    def _run_interactive(
        self,
        args: list[str],
        state: SessionState,
        broker: PasswordBroker,
        answers: Answers,
        error_type: type[OperationFailedError],
        on_line: Callable[[str], None] | None = None,
        not_found_ok: bool = False,
    ) -> bool:
        """Run gpg with status lines on stdout until it exits. Returns what :meth:`_finish` returns."""
        session = ProcessSession(
            self.config, args, interactive=True, on_stderr_line=state.handle_stderr_line
        )
        with session:
            session.start()
            try:
                while True:
                    item = session.read_line()
                    if item is None:
                        break
                    text, event = item
                    if text is not None:
                        if on_line is not None:
                            on_line(text)
                    elif isinstance(event, InputRequestEvent):
                        self._answer_prompt(session, broker, event, answers)
                        if state.cancelled:
                            session.kill()
                            break
                    elif event is not None:
                        broker.handle_status(event)
            except BaseException:
                session.kill()
                raise
            return self._finish(session, state, error_type, not_found_ok=not_found_ok)

    # Encryption and signing

    def encrypt(
        self,
        source: BinaryIO,
        destination: BinaryIO,
        options: EncryptionOptions,
        output: OutputOptions | None = None,
    ) -> Result[None]:
        return self.sign_and_encrypt(source, destination, options, None, output)

    def sign(
        self,
        source: BinaryIO,
        destination: BinaryIO,
        options: SigningOptions,
        output: OutputOptions | None = None,
        password: SecureString | None = None,
    ) -> Result[None]:
        return self.sign_and_encrypt(source, destination, None, options, output, password)

    def sign_and_encrypt(
        self,
        source: BinaryIO,
        destination: BinaryIO,
        encryption: EncryptionOptions | None,
        signing: SigningOptions | None,
        output: OutputOptions | None = None,
        password: SecureString | None = None,
    ) -> Result[None]:
        """Sign and/or encrypt ``source`` into ``destination``.

        ``password`` unlocks the signing key; the symmetric passphrase comes
        from ``encryption.password``.
        """
        return self._attempt(
            lambda: self._sign_and_encrypt(source, destination, encryption, signing, output, password)
        )

    def _sign_and_encrypt(
        self,
        source: BinaryIO,
        destination: BinaryIO,
        encryption: EncryptionOptions | None,
        signing: SigningOptions | None,
        output: OutputOptions | None,
        password: SecureString | None,
    ) -> None:
        if encryption is None and signing is None:
            raise ValueError("Either encryption or signing options are required")

        state, broker = self._new_state(
            key_password=password,
            cipher_password=encryption.password if encryption is not None else None,
        )
        args = (output or OutputOptions()).to_args()

        if encryption is not None:
            has_recipients = bool(encryption.recipients or encryption.hidden_recipients)
            if not has_recipients and not encryption.symmetric:
                raise ValueError("Encryption needs at least one recipient or a password")
            for recipient in encryption.recipients:
                args.extend(["--recipient", recipient])
            for recipient in encryption.hidden_recipients:
                args.extend(["--hidden-recipient", recipient])
            if has_recipients:
                args.append("--encrypt")
            if encryption.cipher:
                self._assert_supported(encryption.cipher, "cipher")
                args.extend(["--cipher-algo", encryption.cipher])
                # gpg does not say when it rejects the algorithm
                state.add_failure(FailureReason.UNSUPPORTED_ALGORITHM)
            if encryption.symmetric:
                args.append("--symmetric")
            if encryption.always_trust_recipients:
                args.extend(["--trust-model", "always"])

        if signing is not None:
            if signing.detached and encryption is not None:
                raise ValueError("Detached signatures cannot be combined with encryption")
            if signing.hash:
                self._assert_supported(signing.hash, "hash")
                args.extend(["--digest-algo", signing.hash])
                state.add_failure(FailureReason.UNSUPPORTED_ALGORITHM)
            for signer in signing.signers:
                args.extend(["--local-user", signer])
            args.append("--detach-sign" if signing.detached else "--sign")

        always_trust = encryption is not None and encryption.always_trust_recipients

        def answers(prompt_id: str) -> str | None:
            if prompt_id == "untrusted_key.override":
                if always_trust:
                    return "Y"
                state.add_failure(FailureReason.UNTRUSTED_RECIPIENT)
                return "N"
            return None

        ready = threading.Event()

        def on_status(event: StatusEvent) -> None:
            broker.handle_status(event)
            if event.kind in (StatusKind.BEGIN_ENCRYPTION, StatusKind.BEGIN_SIGNING):
                ready.set()

        error_type = EncryptionFailedError if encryption is not None else SigningFailedError
        session = self._session(args, state, broker, on_status=on_status, answers=answers)
        with session:
            session.start()
            # Recipients and keys are resolved before gpg reads any data
            while not ready.wait(READY_POLL_SECONDS):
                if session.process.poll() is not None:
                    break
            if ready.is_set():
                pump(source, destination, session)
            self._finish(session, state, error_type)

    # Decryption and verification

    def decrypt(
        self,
        source: BinaryIO,
        destination: BinaryIO,
        options: DecryptionOptions | None = None,
    ) -> Result[list[Signature]]:
        """Decrypt ``source`` into ``destination``. Returns the signatures found on the data."""
        options = options or DecryptionOptions()
        args = [*options.to_args(), "--decrypt"]
        return self._attempt(
            lambda: self._decrypt_verify(
                args, source, destination, options.password, DecryptionFailedError
            )
        )

    def verify(
        self,
        signed_data: BinaryIO,
        signature: BinaryIO | None = None,
        options: VerificationOptions | None = None,
    ) -> Result[list[Signature]]:
        """Verify embedded signatures, or the detached ``signature`` over ``signed_data``."""
        options = options or VerificationOptions()
        return self._attempt(lambda: self._verify(signed_data, signature, options))

    def _verify(
        self,
        signed_data: BinaryIO,
        signature: BinaryIO | None,
        options: VerificationOptions,
    ) -> list[Signature]:
        if signature is None:
            args = [*options.to_args(), "--verify", "-"]
            return self._decrypt_verify(args, signed_data, None, None, VerificationFailedError)

        # gpg reads one of the two inputs from a file
        with tempfile.NamedTemporaryFile(prefix="gpg-bridge-", suffix=".sig", delete=False) as handle:
            signature_path = Path(handle.name)
        try:
            with signature_path.open("wb") as handle:
                copy_stream(signature, handle)
            args = [*options.to_args(), "--verify", str(signature_path), "-"]
            return self._decrypt_verify(args, signed_data, None, None, VerificationFailedError)
        finally:
            signature_path.unlink(missing_ok=True)

    def _decrypt_verify(
        self,
        args: list[str],
        source: BinaryIO,
        destination: BinaryIO | None,
        password: SecureString | None,
        error_type: type[OperationFailedError],
    ) -> list[Signature]:
        state, broker = self._new_state(cipher_password=password)
        collector = _SignatureCollector()

        def on_status(event: StatusEvent) -> None:
            collector.handle(event)
            broker.handle_status(event)

        session = self._session(args, state, broker, on_status=on_status)
        with session:
            session.start()
            pump(source, destination, session)
            self._finish(session, state, error_type)
        return collector.finish()

    # Hashing and randomness

    def hash(self, source: BinaryIO, algorithm: str | None = None) -> Result[bytes]:
        """Hash ``source`` with gpg's ``--print-md``. SHA1 unless ``algorithm`` is given."""
        return self._attempt(lambda: self._hash(source, algorithm))

    def _hash(self, source: BinaryIO, algorithm: str | None) -> bytes:
        state = SessionState()
        if algorithm:
            self._assert_supported(algorithm, "hash")
            state.add_failure(FailureReason.UNSUPPORTED_ALGORITHM)
        output = io.BytesIO()
        session = ProcessSession(
            self.config,
            ["--print-md", algorithm or "SHA1"],
            status_channel=False,
            on_stderr_line=state.handle_stderr_line,
        )
        with session:
            session.start()
            pump(source, output, session)
            self._finish(session, state, HashFailedError)

        digest = parse_digest(output.getvalue().decode("utf-8", "replace"))
        if not digest:
            raise HashFailedError(state.failure_reasons, extra="gpg printed no digest.")
        return digest

    def get_random_data(
        self, count: int, quality: Randomness = Randomness.STRONG
    ) -> Result[bytes]:
        return self._attempt(lambda: self._get_random_data(count, quality))

    def _get_random_data(self, count: int, quality: Randomness) -> bytes:
        if count < 0:
            raise ValueError("The number of random bytes cannot be negative")
        if count == 0:
            return b""

        state = SessionState()
        session = ProcessSession(
            self.config,
            ["--gen-random", str(quality.value), str(count)],
            status_channel=False,
            close_stdin=True,
            on_stderr_line=state.handle_stderr_line,
        )
        data = bytearray()
        with session:
            session.start()
            while len(data) < count:
                chunk = session.stdout.read(count - len(data))
                if not chunk:
                    break
                data += chunk
            self._finish(session, state, RandomDataError)

        if len(data) < count:
            zero_buffer(data)
            raise RandomDataError(extra=f"gpg returned fewer than {count} random bytes.")
        random_bytes = bytes(data)
        zero_buffer(data)
        return random_bytes

    # Import and export

    def import_keys(
        self, source: BinaryIO, options: ImportOptions = ImportOptions.DEFAULT
    ) -> Result[list[ImportedKey]]:
        return self._attempt(lambda: self._import_keys(source, options))

    def _import_keys(self, source: BinaryIO, options: ImportOptions) -> list[ImportedKey]:
        state, broker = self._new_state()
        tracker = _ImportTracker()

        def on_status(event: StatusEvent) -> None:
            tracker.handle(event)
            broker.handle_status(event)

        session = self._session(
            [*import_args(options), "--import"],
            state,
            broker,
            on_status=on_status,
            stdout=StreamHandling.DUMP_BINARY,
        )
        with session:
            session.start()
            pump(source, None, session)
            self._finish(session, state, ImportFailedError)
        return tracker.results

    def export_public_keys(
        self,
        keys: Sequence[KeyRef] | None,
        destination: BinaryIO,
        options: ExportOptions = ExportOptions.DEFAULT,
        output: OutputOptions | None = None,
    ) -> Result[None]:
        """Export public keys. ``None`` exports the whole keyring."""
        return self._attempt(lambda: self._export(keys, destination, False, options, output))

    def export_secret_keys(
        self,
        keys: Sequence[KeyRef] | None,
        destination: BinaryIO,
        options: ExportOptions = ExportOptions.DEFAULT,
        output: OutputOptions | None = None,
        password: SecureString | None = None,
    ) -> Result[None]:
        return self._attempt(
            lambda: self._export(keys, destination, True, options, output, password)
        )

    def _export(
        self,
        keys: Sequence[KeyRef] | None,
        destination: BinaryIO,
        secret: bool,
        options: ExportOptions,
        output: OutputOptions | None,
        password: SecureString | None = None,
    ) -> None:
        if keys is not None and not keys:
            return
        specs = [key_spec(key) for key in keys or ()]
        args = [*(output or OutputOptions()).to_args(), *export_args(options, secret), *specs]
        state, broker = self._new_state(key_password=password)
        session = self._session(args, state, broker, close_stdin=True)
        with session:
            session.start()
            copy_stream(session.stdout, destination)
            self._finish(session, state, ExportFailedError)

    # Key listing

    def get_public_keys(
        self, signatures: ListingSignatures = ListingSignatures.IGNORE
    ) -> Result[list[PrimaryKey]]:
        return self._attempt(lambda: self._list_keys(False, signatures, None))

    def get_secret_keys(self) -> Result[list[PrimaryKey]]:
        return self._attempt(lambda: self._list_keys(True, ListingSignatures.IGNORE, None))

    def find_public_keys(
        self,
        fingerprints: Sequence[str],
        signatures: ListingSignatures = ListingSignatures.IGNORE,
    ) -> Result[list[PrimaryKey | None]]:
        """Look up keys by fingerprint. The result lines up with ``fingerprints``; missing keys are None."""
        return self._attempt(lambda: self._find_keys(fingerprints, False, signatures))

    def find_secret_keys(self, fingerprints: Sequence[str]) -> Result[list[PrimaryKey | None]]:
        return self._attempt(
            lambda: self._find_keys(fingerprints, True, ListingSignatures.IGNORE)
        )

    def _find_keys(
        self, fingerprints: Sequence[str], secret: bool, signatures: ListingSignatures
    ) -> list[PrimaryKey | None]:
        if not fingerprints:
            return []
        found = self._list_keys(secret, signatures, fingerprints)
        by_fingerprint: dict[str, PrimaryKey] = {}
        for key in found:
            if key.fingerprint:
                by_fingerprint[key.fingerprint.upper()] = key
            for subkey in key.subkeys:
                if subkey.fingerprint:
                    by_fingerprint.setdefault(subkey.fingerprint.upper(), key)
        return [by_fingerprint.get(fingerprint.upper()) for fingerprint in fingerprints]

    def _list_keys(
        self,
        secret: bool,
        signatures: ListingSignatures,
        search: Sequence[str] | None,
    ) -> list[PrimaryKey]:
        if secret:
            args = ["--list-secret-keys"]
        elif signatures == ListingSignatures.RETRIEVE:
            args = ["--list-sigs", "--no-sig-cache"]
        elif signatures == ListingSignatures.VERIFY:
            args = ["--check-sigs", "--no-sig-cache"]
        else:
            args = ["--list-keys"]
        # Twice, so subkey fingerprints are listed too
        args += ["--with-fingerprint", "--with-fingerprint", "--with-colons", "--fixed-list-mode"]
        args += list(search or ())

        state = SessionState()
        parser = KeyListingParser()

        def on_stderr_line(line: str) -> None:
            state.handle_stderr_line(line)
            if search and any(message in line for message in _NOT_FOUND_MESSAGES):
                state.add_failure(FailureReason.KEY_NOT_FOUND)

        session = ProcessSession(
            self.config,
            args,
            status_channel=False,
            close_stdin=True,
            stdout=StreamHandling.PROCESS_TEXT,
            on_stdout_line=parser.feed,
            on_stderr_line=on_stderr_line,
        )
        with session:
            session.start()
            self._finish(session, state, KeyListingFailedError, not_found_ok=bool(search))
        return parser.finish()

    # Key management

    def delete_keys(
        self, keys: Sequence[KeyRef], deletion: KeyDeletion = KeyDeletion.PUBLIC_AND_SECRET
    ) -> Result[None]:
        return self._attempt(lambda: self._delete_keys(keys, deletion))

    def _delete_keys(self, keys: Sequence[KeyRef], deletion: KeyDeletion) -> None:
        specs = [key_spec(key) for key in keys]
        if not specs:
            return
        command = (
            "--delete-secret-key"
            if deletion == KeyDeletion.SECRET
            else "--delete-secret-and-public-key"
        )
        state, broker = self._new_state()

        def answers(prompt_id: str) -> str | None:
            if prompt_id in ("delete_key.okay", "delete_key.secret.okay"):
                return "Y"
            return None

        # --yes keeps gpg-agent from asking for its own confirmation
        session = self._session(
            ["--yes", command, *specs],
            state,
            broker,
            answers=answers,
            close_stdin=True,
            stdout=StreamHandling.DUMP_BINARY,
        )
        with session:
            session.start()
            self._finish(session, state, KeyEditFailedError)

    def create_key(self, options: NewKeyOptions) -> Result[PrimaryKey]:
        """Generate a new key pair unattended and return its secret-key listing."""
        return self._attempt(lambda: self._create_key(options))

    def _create_key(self, options: NewKeyOptions) -> PrimaryKey:
        if not options.real_name.strip() and not options.email.strip():
            raise ValueError("A new key needs a name or an email address")
        for value in (options.real_name, options.email, options.comment):
            if _CONTROL_CHARS.search(value):
                raise ValueError("User ID fields cannot contain control characters")
        if options.key_length < 0 or options.subkey_length < 0:
            raise ValueError("Key lengths cannot be negative")

        now = datetime.now(UTC)
        if options.expiration is not None:
            now = datetime.now(options.expiration.tzinfo)
            if options.expiration < now + MIN_EXPIRATION:
                raise ValueError("The expiration date must be at least 30 seconds in the future")

        state, broker = self._new_state()
        created: list[str] = []

        def on_status(event: StatusEvent) -> None:
            broker.handle_status(event)
            if isinstance(event, KeyCreatedEvent) and event.primary_created and event.fingerprint:
                created.append(event.fingerprint)

        session = self._session(
            ["--batch", "--gen-key"],
            state,
            broker,
            on_status=on_status,
            stdout=StreamHandling.PROCESS_TEXT,
            on_stdout_line=lambda line: logger.debug(f"gpg: {line}"),
        )
        with session:
            session.start()
            self._write_key_parameters(session, options, now)
            self._finish(session, state, KeyCreationFailedError)

        if not created:
            raise KeyCreationFailedError(
                state.failure_reasons, extra="gpg did not report the new key."
            )
        keys = self._find_keys(created[-1:], True, ListingSignatures.IGNORE)
        if keys[0] is None:
            raise KeyCreationFailedError(extra=f"The new key {created[-1]} could not be listed.")
        return keys[0]

    @staticmethod
    def _write_key_parameters(
        session: ProcessSession, options: NewKeyOptions, now: datetime
    ) -> None:
        parameters = bytearray()
        for line in options.batch_lines(now):
            parameters += f"{line}\n".encode()
        if options.password:
            secret = options.password.encode_line()
            parameters += b"Passphrase: " + secret
            zero_buffer(secret)
        else:
            parameters += b"%no-protection\n"
        parameters += b"%commit\n"
        try:
            write_all(session.stdin, parameters)
        except BrokenPipeError:
            logger.debug("gpg exited before reading the key parameters")
        finally:
            zero_buffer(parameters)
            session.stdin.close()

    def generate_revocation_certificate(
        self,
        key: KeyRef,
        output_path: Path,
        reason: RevocationReason | None = None,
        output: OutputOptions | None = None,
        password: SecureString | None = None,
        designated_revoker: KeyRef | None = None,
    ) -> Result[Path]:
        """Write a revocation certificate for ``key`` to ``output_path``.

        With ``designated_revoker`` the certificate is made by that key, which
        must have been designated with :meth:`add_designated_revoker`, and
        ``password`` unlocks it instead of ``key``.
        """
        return self._attempt(
            lambda: self._generate_revocation_certificate(
                key, output_path, reason, output, password, designated_revoker
            )
        )

    def _generate_revocation_certificate(
        self,
        key: KeyRef,
        output_path: Path,
        reason: RevocationReason | None,
        output: OutputOptions | None,
        password: SecureString | None,
        designated_revoker: KeyRef | None = None,
    ) -> Path:
        reason_answers = RevocationReasonAnswers(reason)
        if designated_revoker is None:
            command = ["--gen-revoke", key_spec(key)]
            confirm_prompt = "gen_revoke.okay"
        else:
            command = ["--local-user", key_spec(designated_revoker), "--desig-revoke", key_spec(key)]
            confirm_prompt = "gen_desig_revoke.okay"

        def answers(prompt_id: str) -> str | None:
            if prompt_id == confirm_prompt:
                return "Y"
            return reason_answers.answer(prompt_id)

        args = [
            *(output or OutputOptions(OutputFormat.ASCII)).to_args(),
            "--yes",
            "--output",
            str(output_path),
            *command,
        ]
        state, broker = self._new_state(key_password=password)
        self._run_interactive(args, state, broker, answers, RevocationFailedError)
        return output_path

    def revoke_keys(
        self,
        keys: Sequence[KeyRef],
        reason: RevocationReason | None = None,
        password: SecureString | None = None,
        designated_revoker: KeyRef | None = None,
    ) -> Result[None]:
        """Revoke ``keys`` in the keyring, by their owner or by ``designated_revoker``.

        Each key gets a revocation certificate which is imported straight away.
        """
        return self._attempt(lambda: self._revoke_keys(keys, reason, password, designated_revoker))

    def _revoke_keys(
        self,
        keys: Sequence[KeyRef],
        reason: RevocationReason | None,
        password: SecureString | None,
        designated_revoker: KeyRef | None,
    ) -> None:
        for key in keys:
            with tempfile.NamedTemporaryFile(prefix="gpg-bridge-", suffix=".rev", delete=False) as handle:
                certificate_path = Path(handle.name)
            try:
                self._generate_revocation_certificate(
                    key, certificate_path, reason, None, password, designated_revoker
                )
                with certificate_path.open("rb") as certificate:
                    self._import_keys(certificate, ImportOptions.DEFAULT)
            except ImportFailedError as e:
                raise RevocationFailedError(
                    e.reasons,
                    extra=f"The revocation certificate for {key_spec(key)} was not imported.",
                    exit_code=e.exit_code,
                    cause=e,
                ) from e
            finally:
                certificate_path.unlink(missing_ok=True)

    # Keyserver

    def search_keyserver(
        self, query: str, options: KeyServerOptions | None = None
    ) -> Result[list[KeyServerKey]]:
        return self._attempt(lambda: self._search_keyserver(query, options or KeyServerOptions()))

    def _search_keyserver(self, query: str, options: KeyServerOptions) -> list[KeyServerKey]:
        lines: list[str] = []

        def answers(prompt_id: str) -> str | None:
            # The listing is complete; do not import anything
            if prompt_id == "keysearch.prompt":
                return "q"
            return None

        state, broker = self._new_state()
        found = self._run_interactive(
            [*options.to_args(), "--search-keys", query],
            state,
            broker,
            answers,
            KeyServerError,
            on_line=lines.append,
            not_found_ok=True,
        )
        if not found:
            return []
        return parse_keyserver_listing(lines)

    def receive_keys(
        self, key_ids: Sequence[str], options: KeyServerOptions | None = None
    ) -> Result[list[ImportedKey]]:
        return self._attempt(
            lambda: self._keyserver_import("--recv-keys", list(key_ids), options)
        )

    def refresh_keys(
        self, keys: Sequence[KeyRef] | None = None, options: KeyServerOptions | None = None
    ) -> Result[list[ImportedKey]]:
        """Refresh ``keys`` from the keyserver, or every key in the keyring."""
        specs = [key_spec(key) for key in keys or ()]
        return self._attempt(lambda: self._keyserver_import("--refresh-keys", specs, options))

    def _keyserver_import(
        self, command: str, specs: list[str], options: KeyServerOptions | None
    ) -> list[ImportedKey]:
        if command == "--recv-keys" and not specs:
            return []
        state, broker = self._new_state()
        tracker = _ImportTracker()

        def on_status(event: StatusEvent) -> None:
            tracker.handle(event)
            broker.handle_status(event)

        session = self._session(
            [*(options or KeyServerOptions()).to_args(), command, *specs],
            state,
            broker,
            on_status=on_status,
            close_stdin=True,
            stdout=StreamHandling.DUMP_BINARY,
        )
        with session:
            session.start()
            self._finish(session, state, KeyServerError)
        return tracker.results

    def send_keys(
        self, keys: Sequence[KeyRef], options: KeyServerOptions | None = None
    ) -> Result[None]:
        return self._attempt(lambda: self._send_keys(keys, options or KeyServerOptions()))

    def _send_keys(self, keys: Sequence[KeyRef], options: KeyServerOptions) -> None:
        specs = [key_spec(key) for key in keys]
        if not specs:
            return
        state, broker = self._new_state()
        session = self._session(
            [*options.to_args(), "--send-keys", *specs],
            state,
            broker,
            close_stdin=True,
            stdout=StreamHandling.DUMP_BINARY,
        )
        with session:
            session.start()
            self._finish(session, state, KeyServerError)

    # Key editing

    def _edit_session(
        self,
        key: KeyRef,
        commands: Sequence[EditCommand],
        default_password: SecureString | None = None,
        extra_args: list[str] | None = None,
    ) -> EditSession:
        # The session wipes its default password when done; keep the caller's intact
        password = default_password.copy() if default_password is not None else None
        return EditSession(
            self.config,
            key_spec(key),
            commands,
            callbacks=self.callbacks,
            default_password=password,
            extra_args=extra_args,
        )

    def edit_key(
        self,
        key: KeyRef,
        commands: Sequence[EditCommand],
        default_password: SecureString | None = None,
        extra_args: list[str] | None = None,
    ) -> Result[EditKey | None]:
        """Run ``commands`` in gpg's key edit menu. Returns the last listing gpg printed."""
        return self._attempt(self._edit_session(key, commands, default_password, extra_args).run)

    def get_preferences(self, key: KeyRef, user_id: UserIdSelector) -> Result[UserPreferences]:
        """Read the algorithm preferences of one user ID or attribute, without changing the key."""
        return self._attempt(lambda: self._get_preferences(key, user_id))

    def _get_preferences(self, key: KeyRef, user_id: UserIdSelector) -> UserPreferences:
        show = ShowPreferencesCommand()
        commands = [SelectUidCommand([user_id]), show, QuitCommand(save=False)]
        self._edit_session(key, commands).run()
        if show.listing is None:
            raise KeyEditFailedError(extra="gpg did not list the key with its preferences.")
        uid = resolve_user_id(show.listing, user_id)
        return parse_preferences(uid.preferences, uid.primary)

    def add_photo(
        self,
        key: KeyRef,
        image: BinaryIO | Path,
        preferences: UserPreferences | None = None,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        """Add a JPEG photo ID from a file, or from a stream copied to a temporary file."""
        return self._attempt(lambda: self._add_photo(key, image, preferences, password))

    def _add_photo(
        self,
        key: KeyRef,
        image: BinaryIO | Path,
        preferences: UserPreferences | None,
        password: SecureString | None,
    ) -> EditKey | None:
        if isinstance(image, Path):
            return self._edit_session(key, [AddPhotoCommand(image, preferences)], password).run()

        # gpg only reads photos from a file
        with tempfile.NamedTemporaryFile(prefix="gpg-bridge-", suffix=".jpg", delete=False) as handle:
            image_path = Path(handle.name)
        try:
            with image_path.open("wb") as handle:
                copy_stream(image, handle)
            return self._edit_session(key, [AddPhotoCommand(image_path, preferences)], password).run()
        finally:
            image_path.unlink(missing_ok=True)

    def add_user_id(
        self,
        key: KeyRef,
        real_name: str,
        email: str = "",
        comment: str = "",
        preferences: UserPreferences | None = None,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        for value in (real_name, email, comment):
            if _CONTROL_CHARS.search(value):
                return Result.err(ValueError("User ID fields cannot contain control characters"))
        return self.edit_key(
            key, [AddUidCommand(real_name, email, comment, preferences)], password
        )

    def add_subkey(
        self,
        key: KeyRef,
        key_type: str = "RSA",
        length: int = 0,
        capabilities: KeyCapability = KeyCapability.ENCRYPT,
        expiration: datetime | None = None,
        curve: str | None = None,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        try:
            command = AddSubkeyCommand(key_type, length, capabilities, expiration, curve)
        except ValueError as e:
            return Result.err(e)
        return self.edit_key(key, [command], password)

    def change_expiration(
        self,
        key: KeyRef,
        expiration: datetime | None,
        subkeys: Sequence[str | int] = (),
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        """Change when the primary key, or the given subkeys, expire. None means never."""
        return self.edit_key(
            key, [SelectSubkeyCommand(subkeys), ExpireCommand(expiration)], password
        )

    def change_password(
        self,
        key: KeyRef,
        new_password: SecureString | None,
        old_password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        return self.edit_key(key, [ChangePasswordCommand(new_password)], old_password)

    def delete_user_ids(
        self, key: KeyRef, user_ids: Sequence[UserIdSelector]
    ) -> Result[EditKey | None]:
        return self.edit_key(key, [SelectUidCommand(user_ids), DeleteUidCommand()])

    def revoke_user_ids(
        self,
        key: KeyRef,
        user_ids: Sequence[UserIdSelector],
        reason: RevocationReason | None = None,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        return self.edit_key(key, [SelectUidCommand(user_ids), RevokeUidCommand(reason)], password)

    def delete_subkeys(self, key: KeyRef, subkeys: Sequence[str | int]) -> Result[EditKey | None]:
        return self.edit_key(key, [SelectSubkeyCommand(subkeys), DeleteSubkeyCommand()])

    def revoke_subkeys(
        self,
        key: KeyRef,
        subkeys: Sequence[str | int],
        reason: RevocationReason | None = None,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        return self.edit_key(
            key, [SelectSubkeyCommand(subkeys), RevokeSubkeyCommand(reason)], password
        )

    def set_primary_user_id(
        self, key: KeyRef, user_id: UserIdSelector, password: SecureString | None = None
    ) -> Result[EditKey | None]:
        return self.edit_key(key, [SetPrimaryUidCommand(user_id)], password)

    def set_preferences(
        self,
        key: KeyRef,
        preferences: UserPreferences,
        user_ids: Sequence[UserIdSelector] = (),
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        """Set preferences on ``user_ids``, or on every user ID when none are given."""
        commands: list[EditCommand] = [SetPreferencesCommand(preferences)]
        if user_ids:
            commands.insert(0, SelectUidCommand(user_ids))
        return self.edit_key(key, commands, password)

    def set_owner_trust(self, key: KeyRef, level: TrustLevel) -> Result[EditKey | None]:
        return self.edit_key(key, [SetTrustCommand(level)])

    def sign_key(
        self,
        key: KeyRef,
        signer: KeyRef,
        options: KeySigningOptions | None = None,
        user_ids: Sequence[UserIdSelector] = (),
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        """Certify ``user_ids`` on ``key`` (all of them when none are given) with ``signer``."""
        return self.edit_key(
            key,
            [SelectUidCommand(user_ids), SignKeyCommand(options)],
            password,
            extra_args=["--local-user", key_spec(signer)],
        )

    def delete_signatures(
        self,
        key: KeyRef,
        signatures: Sequence[KeySignature],
        user_ids: Sequence[UserIdSelector] = (),
    ) -> Result[EditKey | None]:
        return self.edit_key(
            key, [SelectUidCommand(user_ids), DeleteSignaturesCommand(signatures)]
        )

    def revoke_signatures(
        self,
        key: KeyRef,
        signer: KeyRef,
        signatures: Sequence[KeySignature] | None = None,
        user_ids: Sequence[UserIdSelector] = (),
        reason: RevocationReason | None = None,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        """Revoke certifications ``signer`` made on ``key``. None revokes all of them."""
        return self.edit_key(
            key,
            [SelectUidCommand(user_ids), RevokeSignaturesCommand(signatures, reason)],
            password,
            extra_args=["--local-user", key_spec(signer)],
        )

    def enable_key(self, key: KeyRef) -> Result[EditKey | None]:
        return self.edit_key(key, [EnableCommand()])

    def disable_key(self, key: KeyRef) -> Result[EditKey | None]:
        return self.edit_key(key, [DisableCommand()])

    def clean_key(self, key: KeyRef) -> Result[EditKey | None]:
        return self.edit_key(key, [CleanCommand()])

    def minimize_key(self, key: KeyRef) -> Result[EditKey | None]:
        return self.edit_key(key, [MinimizeCommand()])

    def add_designated_revoker(
        self,
        key: KeyRef,
        revoker: KeyRef,
        sensitive: bool = False,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        revoker_fingerprint = key_spec(revoker)
        return self.edit_key(key, [AddRevokerCommand(revoker_fingerprint, sensitive)], password)

    # User attributes, given by position in PrimaryKey.attributes

    def delete_attributes(self, key: KeyRef, attributes: Sequence[int]) -> Result[EditKey | None]:
        if not attributes:
            return Result.err(ValueError("No attributes were given"))
        return self.edit_key(key, [SelectUidCommand((), attributes), DeleteUidCommand()])

    def revoke_attributes(
        self,
        key: KeyRef,
        attributes: Sequence[int],
        reason: RevocationReason | None = None,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        if not attributes:
            return Result.err(ValueError("No attributes were given"))
        return self.edit_key(
            key, [SelectUidCommand((), attributes), RevokeUidCommand(reason)], password
        )

    def sign_attributes(
        self,
        key: KeyRef,
        signer: KeyRef,
        attributes: Sequence[int],
        options: KeySigningOptions | None = None,
        password: SecureString | None = None,
    ) -> Result[EditKey | None]:
        """Certify attributes on ``key`` with ``signer``."""
        if not attributes:
            return Result.err(ValueError("No attributes were given"))
        return self.edit_key(
            key,
            [SelectUidCommand((), attributes), SignKeyCommand(options)],
            password,
            extra_args=["--local-user", key_spec(signer)],
        )
