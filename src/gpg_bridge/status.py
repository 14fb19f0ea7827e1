"""Typed events for gpg status messages.

:func:`decode_status` turns a keyword and its (already percent-decoded)
arguments into one of the frozen event classes below. Unknown keywords and
malformed argument lists yield ``None``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum, Flag, auto

from .types import TrustLevel

logger = logging.getLogger("gpg-bridge.status")


class StatusKind(Enum):
    NEW_SIG = auto()
    GOOD_SIG = auto()
    EXPIRED_SIG = auto()
    EXPIRED_KEY_SIG = auto()
    REVOKED_KEY_SIG = auto()
    BAD_SIG = auto()
    ERROR_SIG = auto()
    VALID_SIG = auto()
    ENC_TO = auto()
    NO_DATA = auto()
    UNEXPECTED_DATA = auto()
    TRUST_UNDEFINED = auto()
    TRUST_NEVER = auto()
    TRUST_MARGINAL = auto()
    TRUST_FULLY = auto()
    TRUST_ULTIMATE = auto()
    PKA_TRUST_GOOD = auto()
    PKA_TRUST_BAD = auto()
    KEY_EXPIRED = auto()
    KEY_REVOKED = auto()
    BAD_ARMOR = auto()
    NEED_KEY_PASSPHRASE = auto()
    NEED_CIPHER_PASSPHRASE = auto()
    NEED_PIN = auto()
    MISSING_PASSPHRASE = auto()
    BAD_PASSPHRASE = auto()
    GOOD_PASSPHRASE = auto()
    DECRYPTION_FAILED = auto()
    DECRYPTION_OKAY = auto()
    NO_PUBLIC_KEY = auto()
    NO_SECRET_KEY = auto()
    IMPORTED = auto()
    IMPORT_OKAY = auto()
    IMPORT_PROBLEM = auto()
    IMPORT_RESULT = auto()
    BEGIN_DECRYPTION = auto()
    END_DECRYPTION = auto()
    BEGIN_ENCRYPTION = auto()
    END_ENCRYPTION = auto()
    BEGIN_SIGNING = auto()
    SIG_CREATED = auto()
    DELETE_FAILED = auto()
    KEY_CREATED = auto()
    KEY_NOT_CREATED = auto()
    USER_ID_HINT = auto()
    INVALID_RECIPIENT = auto()
    NO_RECIPIENTS = auto()
    ERROR = auto()
    FAILURE = auto()
    CARD_CONTROL = auto()
    BACKUP_KEY_CREATED = auto()
    GOOD_MDC = auto()
    GET_BOOL = auto()
    GET_LINE = auto()
    GET_HIDDEN = auto()


INPUT_REQUEST_KINDS = frozenset({StatusKind.GET_BOOL, StatusKind.GET_LINE, StatusKind.GET_HIDDEN})


# Algorithm codes from RFC 4880 section 9.

CIPHER_NAMES: dict[int, str] = {
    0: "Unencrypted",
    1: "IDEA",
    2: "3DES",
    3: "CAST5",
    4: "BLOWFISH",
    5: "SAFER",
    6: "DESSK",
    7: "AES",
    8: "AES192",
    9: "AES256",
    10: "TWOFISH",
    11: "CAMELLIA128",
    12: "CAMELLIA192",
    13: "CAMELLIA256",
}

HASH_NAMES: dict[int, str] = {
    1: "MD5",
    2: "SHA1",
    3: "RIPEMD160",
    5: "MD2",
    6: "TIGER192",
    7: "HAVAL-5-160",
    8: "SHA256",
    9: "SHA384",
    10: "SHA512",
    11: "SHA224",
}

COMPRESSION_NAMES: dict[int, str] = {
    0: "Uncompressed",
    1: "ZIP",
    2: "ZLIB",
    3: "BZIP2",
}

KEY_TYPE_NAMES: dict[int, str] = {
    1: "RSA",
    2: "RSA-E",
    3: "RSA-S",
    16: "ELG-E",
    17: "DSA",
    18: "ECDH",
    19: "ECDSA",
    20: "ELG",
    22: "EDDSA",
}


def _parse_code(value: str, names: dict[int, str]) -> str | None:
    if not value:
        return None
    try:
        return names.get(int(value), value)
    except ValueError:
        return value


def parse_cipher(value: str) -> str | None:
    return _parse_code(value, CIPHER_NAMES)


def parse_hash_algorithm(value: str) -> str | None:
    return _parse_code(value, HASH_NAMES)


def parse_key_type(value: str) -> str | None:
    return _parse_code(value, KEY_TYPE_NAMES)


def parse_timestamp(value: str) -> datetime:
    """Parse seconds since the epoch or an ISO 8601 time such as ``20240101T120000``."""
    if "T" not in value:
        return datetime.fromtimestamp(int(value), tz=UTC)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def parse_optional_timestamp(value: str | None) -> datetime | None:
    if not value or value == "0":
        return None
    return parse_timestamp(value)


def _arg(arguments: Sequence[str], index: int) -> str:
    return arguments[index] if index < len(arguments) else ""


class ImportReason(Flag):
    NOT_CHANGED = 0
    NEW_KEY = 1
    NEW_USER_ID = 2
    NEW_SIGNATURE = 4
    NEW_SUBKEY = 8
    CONTAINS_SECRET_KEY = 16


class ImportProblemReason(Enum):
    UNKNOWN = 0
    INVALID_CERTIFICATE = 1
    ISSUER_CERTIFICATE_MISSING = 2
    CERTIFICATE_CHAIN_TOO_LONG = 3
    ERROR_STORING_CERTIFICATE = 4


class DeleteProblemReason(Enum):
    UNKNOWN = 0
    NO_SUCH_KEY = 1
    MUST_DELETE_SECRET_KEY_FIRST = 2
    AMBIGUOUS_KEY = 3


class InvalidRecipientReason(Enum):
    NONE = 0
    NOT_FOUND = 1
    AMBIGUOUS = 2
    WRONG_USAGE = 3
    KEY_REVOKED = 4
    KEY_EXPIRED = 5
    NO_REVOCATION_LIST = 6
    REVOCATION_LIST_TOO_OLD = 7
    POLICY_MISMATCH = 8
    NOT_SECRET = 9
    NOT_TRUSTED = 10


INVALID_RECIPIENT_TEXT: dict[InvalidRecipientReason, str] = {
    InvalidRecipientReason.NOT_FOUND: "The recipient was not found.",
    InvalidRecipientReason.AMBIGUOUS: "The recipient was ambiguous.",
    InvalidRecipientReason.WRONG_USAGE: "The recipient's key was not intended for this usage.",
    InvalidRecipientReason.KEY_REVOKED: "The recipient's key was revoked.",
    InvalidRecipientReason.KEY_EXPIRED: "The recipient's key expired.",
    InvalidRecipientReason.NO_REVOCATION_LIST: (
        "The recipient's key has no known certificate revocation list."
    ),
    InvalidRecipientReason.REVOCATION_LIST_TOO_OLD: (
        "The recipient's key's certificate revocation list is too old."
    ),
    InvalidRecipientReason.POLICY_MISMATCH: "A policy mismatch occurred.",
    InvalidRecipientReason.NOT_SECRET: "The recipient's key is not a secret key.",
    InvalidRecipientReason.NOT_TRUSTED: "The recipient is not trusted.",
}


# Event variants


@dataclass(frozen=True)
class StatusEvent:
    kind: StatusKind

    @property
    def is_input_request(self) -> bool:
        return self.kind in INPUT_REQUEST_KINDS


@dataclass(frozen=True)
class KeyIdEvent(StatusEvent):
    key_id: str


@dataclass(frozen=True)
class SignatureEvent(StatusEvent):
    """GOODSIG, BADSIG and the expired/revoked variants."""

    key_id: str
    user_name: str


@dataclass(frozen=True)
class ErrorSignatureEvent(StatusEvent):
    key_id: str
    key_type: str | None
    hash_algorithm: str | None
    timestamp: datetime | None
    missing_key: bool
    unsupported_algorithm: bool


@dataclass(frozen=True)
class ValidSignatureEvent(StatusEvent):
    fingerprint: str
    timestamp: datetime | None
    expiration: datetime | None
    key_type: str | None
    hash_algorithm: str | None
    primary_fingerprint: str


@dataclass(frozen=True)
class TrustLevelEvent(StatusEvent):
    level: TrustLevel


@dataclass(frozen=True)
class InputRequestEvent(StatusEvent):
    prompt_id: str


@dataclass(frozen=True)
class UserIdHintEvent(StatusEvent):
    key_id: str
    hint: str | None


@dataclass(frozen=True)
class NeedPassphraseEvent(StatusEvent):
    primary_key_id: str
    key_id: str


@dataclass(frozen=True)
class KeySigImportedEvent(StatusEvent):
    key_id: str
    user_name: str


@dataclass(frozen=True)
class ImportOkayEvent(StatusEvent):
    reason: ImportReason
    fingerprint: str | None


@dataclass(frozen=True)
class ImportProblemEvent(StatusEvent):
    reason: ImportProblemReason
    fingerprint: str | None


@dataclass(frozen=True)
class ImportResultEvent(StatusEvent):
    total_keys: int
    keys_without_user_ids: int
    keys_imported: int
    keys_unchanged: int
    new_user_ids: int
    new_subkeys: int
    new_signatures: int
    new_revocations: int
    secret_keys_read: int
    secret_keys_imported: int
    secret_keys_unchanged: int
    keys_not_imported: int


@dataclass(frozen=True)
class DeleteProblemEvent(StatusEvent):
    reason: DeleteProblemReason


@dataclass(frozen=True)
class InvalidRecipientEvent(StatusEvent):
    reason: InvalidRecipientReason
    recipient: str

    @property
    def reason_text(self) -> str:
        return INVALID_RECIPIENT_TEXT.get(self.reason, "An unknown failure occurred.")


@dataclass(frozen=True)
class KeyCreatedEvent(StatusEvent):
    primary_created: bool
    subkey_created: bool
    fingerprint: str | None


@dataclass(frozen=True)
class ErrorEvent(StatusEvent):
    """ERROR and FAILURE: a location string and a gpg-error code."""

    location: str
    code: str


# Decoders


def _key_id(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return KeyIdEvent(kind, args[0].upper())


def _signature(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return SignatureEvent(kind, args[0].upper(), " ".join(args[1:]))


def _error_signature(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    reason = _arg(args, 5)
    return ErrorSignatureEvent(
        kind,
        key_id=args[0].upper(),
        key_type=parse_key_type(_arg(args, 1)),
        hash_algorithm=parse_hash_algorithm(_arg(args, 2)),
        timestamp=parse_optional_timestamp(_arg(args, 4)),
        missing_key=reason == "9",
        unsupported_algorithm=reason == "4",
    )


def _valid_signature(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return ValidSignatureEvent(
        kind,
        fingerprint=args[0].upper(),
        timestamp=parse_optional_timestamp(_arg(args, 2)),
        expiration=parse_optional_timestamp(_arg(args, 3)),
        key_type=parse_key_type(_arg(args, 6)),
        hash_algorithm=parse_hash_algorithm(_arg(args, 7)),
        primary_fingerprint=(_arg(args, 9) or args[0]).upper(),
    )


def _trust(level: TrustLevel) -> Callable[[StatusKind, Sequence[str]], StatusEvent]:
    def build(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
        return TrustLevelEvent(kind, level)

    return build


def _input_request(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return InputRequestEvent(kind, args[0])


def _user_id_hint(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    hint = " ".join(args[1:]) if len(args) > 1 else None
    return UserIdHintEvent(kind, args[0].upper(), hint)


def _need_passphrase(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return NeedPassphraseEvent(kind, args[0].upper(), args[1].upper())


def _bad_passphrase(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return KeyIdEvent(kind, _arg(args, 0).upper())


def _imported(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return KeySigImportedEvent(kind, args[0].upper(), " ".join(args[1:]))


def _import_okay(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    fingerprint = _arg(args, 1).upper() or None
    return ImportOkayEvent(kind, ImportReason(int(args[0]) & 0x1F), fingerprint)


def _import_problem(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    try:
        reason = ImportProblemReason(int(args[0]))
    except ValueError:
        reason = ImportProblemReason.UNKNOWN
    return ImportProblemEvent(kind, reason, _arg(args, 1).upper() or None)


def _import_result(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    counts = [int(value) for value in args[:13]]
    if len(counts) < 13:
        raise ValueError(f"expected 13 counts, got {len(counts)}")
    # The fourth count (RSA keys imported) is obsolete.
    return ImportResultEvent(kind, *counts[:3], *counts[4:13])


def _delete_problem(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    try:
        reason = DeleteProblemReason(int(args[0]))
    except ValueError:
        reason = DeleteProblemReason.UNKNOWN
    return DeleteProblemEvent(kind, reason)


def _invalid_recipient(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    try:
        reason = InvalidRecipientReason(int(args[0]))
    except ValueError:
        reason = InvalidRecipientReason.NONE
    return InvalidRecipientEvent(kind, reason, " ".join(args[1:]))


def _key_created(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    which = args[0][:1]
    return KeyCreatedEvent(
        kind,
        primary_created=which in ("B", "P"),
        subkey_created=which in ("B", "S"),
        fingerprint=_arg(args, 1).upper() or None,
    )


def _error(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return ErrorEvent(kind, _arg(args, 0), _arg(args, 1))


def _generic(kind: StatusKind, args: Sequence[str]) -> StatusEvent:
    return StatusEvent(kind)


_Decoder = Callable[[StatusKind, Sequence[str]], StatusEvent]

STATUS_TABLE: dict[str, tuple[StatusKind, _Decoder]] = {
    "NEWSIG": (StatusKind.NEW_SIG, _generic),
    "GOODSIG": (StatusKind.GOOD_SIG, _signature),
    "EXPSIG": (StatusKind.EXPIRED_SIG, _signature),
    "EXPKEYSIG": (StatusKind.EXPIRED_KEY_SIG, _signature),
    "REVKEYSIG": (StatusKind.REVOKED_KEY_SIG, _signature),
    "BADSIG": (StatusKind.BAD_SIG, _signature),
    "ERRSIG": (StatusKind.ERROR_SIG, _error_signature),
    "VALIDSIG": (StatusKind.VALID_SIG, _valid_signature),
    "IMPORTED": (StatusKind.IMPORTED, _imported),
    "IMPORT_OK": (StatusKind.IMPORT_OKAY, _import_okay),
    "IMPORT_PROBLEM": (StatusKind.IMPORT_PROBLEM, _import_problem),
    "IMPORT_RES": (StatusKind.IMPORT_RESULT, _import_result),
    "USERID_HINT": (StatusKind.USER_ID_HINT, _user_id_hint),
    "NEED_PASSPHRASE": (StatusKind.NEED_KEY_PASSPHRASE, _need_passphrase),
    "NEED_PASSPHRASE_SYM": (StatusKind.NEED_CIPHER_PASSPHRASE, _generic),
    "NEED_PASSPHRASE_PIN": (StatusKind.NEED_PIN, _generic),
    "GOOD_PASSPHRASE": (StatusKind.GOOD_PASSPHRASE, _generic),
    "MISSING_PASSPHRASE": (StatusKind.MISSING_PASSPHRASE, _generic),
    "BAD_PASSPHRASE": (StatusKind.BAD_PASSPHRASE, _bad_passphrase),
    "BEGIN_SIGNING": (StatusKind.BEGIN_SIGNING, _generic),
    "SIG_CREATED": (StatusKind.SIG_CREATED, _generic),
    "BEGIN_DECRYPTION": (StatusKind.BEGIN_DECRYPTION, _generic),
    "END_DECRYPTION": (StatusKind.END_DECRYPTION, _generic),
    "ENC_TO": (StatusKind.ENC_TO, _key_id),
    "DECRYPTION_OKAY": (StatusKind.DECRYPTION_OKAY, _generic),
    "DECRYPTION_FAILED": (StatusKind.DECRYPTION_FAILED, _generic),
    "GOODMDC": (StatusKind.GOOD_MDC, _generic),
    "BEGIN_ENCRYPTION": (StatusKind.BEGIN_ENCRYPTION, _generic),
    "END_ENCRYPTION": (StatusKind.END_ENCRYPTION, _generic),
    "INV_RECP": (StatusKind.INVALID_RECIPIENT, _invalid_recipient),
    "NO_RECP": (StatusKind.NO_RECIPIENTS, _generic),
    "NODATA": (StatusKind.NO_DATA, _generic),
    "NO_PUBKEY": (StatusKind.NO_PUBLIC_KEY, _key_id),
    "NO_SECKEY": (StatusKind.NO_SECRET_KEY, _key_id),
    "UNEXPECTED": (StatusKind.UNEXPECTED_DATA, _generic),
    "BADARMOR": (StatusKind.BAD_ARMOR, _generic),
    "KEYEXPIRED": (StatusKind.KEY_EXPIRED, _generic),
    "KEYREVOKED": (StatusKind.KEY_REVOKED, _generic),
    "PKA_TRUST_GOOD": (StatusKind.PKA_TRUST_GOOD, _generic),
    "PKA_TRUST_BAD": (StatusKind.PKA_TRUST_BAD, _generic),
    "TRUST_UNDEFINED": (StatusKind.TRUST_UNDEFINED, _trust(TrustLevel.UNKNOWN)),
    "TRUST_NEVER": (StatusKind.TRUST_NEVER, _trust(TrustLevel.NEVER)),
    "TRUST_MARGINAL": (StatusKind.TRUST_MARGINAL, _trust(TrustLevel.MARGINAL)),
    "TRUST_FULLY": (StatusKind.TRUST_FULLY, _trust(TrustLevel.FULL)),
    "TRUST_ULTIMATE": (StatusKind.TRUST_ULTIMATE, _trust(TrustLevel.ULTIMATE)),
    "GET_HIDDEN": (StatusKind.GET_HIDDEN, _input_request),
    "GET_BOOL": (StatusKind.GET_BOOL, _input_request),
    "GET_LINE": (StatusKind.GET_LINE, _input_request),
    "DELETE_PROBLEM": (StatusKind.DELETE_FAILED, _delete_problem),
    "KEY_CREATED": (StatusKind.KEY_CREATED, _key_created),
    "KEY_NOT_CREATED": (StatusKind.KEY_NOT_CREATED, _generic),
    "ERROR": (StatusKind.ERROR, _error),
    "FAILURE": (StatusKind.FAILURE, _error),
    "CARDCTRL": (StatusKind.CARD_CONTROL, _generic),
    "BACKUP_KEY_CREATED": (StatusKind.BACKUP_KEY_CREATED, _generic),
}

# Known but uninteresting; dropped without logging.
IGNORED_KEYWORDS = frozenset(
    {
        "PLAINTEXT",
        "PLAINTEXT_LENGTH",
        "SIG_ID",
        "GOT_IT",
        "PROGRESS",
        "KEY_CONSIDERED",
        "DECRYPTION_INFO",
        "DECRYPTION_COMPLIANCE_MODE",
        "VERIFICATION_COMPLIANCE_MODE",
        "PINENTRY_LAUNCHED",
        "INQUIRE_MAXLEN",
        "NEWSIG_INFO",
        "SUCCESS",
        "FILE_START",
        "FILE_DONE",
        "IMPORT_CHECK",
    }
)


def decode_status(keyword: str, arguments: Sequence[str]) -> StatusEvent | None:
    """Build the event for one status line, or ``None`` if it is unknown or malformed."""
    entry = STATUS_TABLE.get(keyword)
    if entry is None:
        if keyword not in IGNORED_KEYWORDS:
            logger.debug(f"Ignoring unknown status keyword {keyword}")
        return None

    kind, decoder = entry
    try:
        return decoder(kind, arguments)
    except (IndexError, ValueError, OverflowError) as e:
        logger.warning(f"Malformed {keyword} status line ({len(arguments)} arguments): {e}")
        return None
