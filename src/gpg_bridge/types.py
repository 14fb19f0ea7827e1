from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, Flag, auto
from typing import Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


class FailureReason(Flag):
    """Possible causes of a failed operation. Several may be set at once."""

    NONE = 0
    MISSING_SECRET_KEY = auto()
    MISSING_PUBLIC_KEY = auto()
    BAD_PASSWORD = auto()
    UNSUPPORTED_ALGORITHM = auto()
    BAD_DATA = auto()
    INVALID_RECIPIENTS = auto()
    KEYRING_LOCKED = auto()
    UNTRUSTED_RECIPIENT = auto()
    SECRET_KEY_ALREADY_EXISTS = auto()
    KEY_NOT_FOUND = auto()
    OPERATION_CANCELED = auto()


FAILURE_DESCRIPTIONS: dict[FailureReason, str] = {
    FailureReason.MISSING_SECRET_KEY: "missing or inaccessible secret key",
    FailureReason.MISSING_PUBLIC_KEY: "missing public key",
    FailureReason.BAD_PASSWORD: "bad or missing passphrase",
    FailureReason.UNSUPPORTED_ALGORITHM: "unsupported algorithm",
    FailureReason.BAD_DATA: "invalid source data",
    FailureReason.INVALID_RECIPIENTS: "invalid recipient(s)",
    FailureReason.KEYRING_LOCKED: "keyring locked by another process",
    FailureReason.UNTRUSTED_RECIPIENT: "a recipient was not trusted",
    FailureReason.SECRET_KEY_ALREADY_EXISTS: "the secret key already exists",
    FailureReason.KEY_NOT_FOUND: "key not found",
    FailureReason.OPERATION_CANCELED: "operation canceled",
}


def describe_failure(reasons: FailureReason) -> list[str]:
    return [text for flag, text in FAILURE_DESCRIPTIONS.items() if flag in reasons]


class TrustLevel(Enum):
    UNKNOWN = "unknown"
    NEVER = "never"
    MARGINAL = "marginal"
    FULL = "full"
    ULTIMATE = "ultimate"

    @classmethod
    def from_char(cls, char: str) -> TrustLevel:
        return {
            "n": cls.NEVER,
            "m": cls.MARGINAL,
            "f": cls.FULL,
            "u": cls.ULTIMATE,
        }.get(char, cls.UNKNOWN)


class KeyCapability(Flag):
    NONE = 0
    ENCRYPT = auto()
    SIGN = auto()
    CERTIFY = auto()
    AUTHENTICATE = auto()


class SignatureStatus(Flag):
    NONE = 0
    VALID = auto()
    INVALID = auto()
    ERROR = auto()
    MISSING_KEY = auto()
    UNSUPPORTED_ALGORITHM = auto()
    EXPIRED_SIGNATURE = auto()
    EXPIRED_KEY = auto()
    REVOKED_KEY = auto()

    @classmethod
    def valid_flag_mask(cls) -> SignatureStatus:
        return cls.EXPIRED_SIGNATURE | cls.EXPIRED_KEY | cls.REVOKED_KEY


@dataclass(frozen=True)
class KeySignature:
    status: SignatureStatus
    key_id: str | None
    fingerprint: str | None
    signer_name: str | None
    creation_time: datetime | None
    signature_class: int | None
    exportable: bool
    revocation: bool = False


@dataclass(frozen=True)
class UserId:
    name: str
    primary: bool
    calculated_trust: TrustLevel
    creation_time: datetime | None
    signatures: tuple[KeySignature, ...] = ()
    revoked: bool = False


@dataclass(frozen=True)
class UserAttribute:
    """A non-text user attribute (``uat`` record), usually a photo."""

    primary: bool
    calculated_trust: TrustLevel
    creation_time: datetime | None
    signatures: tuple[KeySignature, ...] = ()
    revoked: bool = False


@dataclass(frozen=True)
class Subkey:
    key_id: str
    fingerprint: str | None
    key_type: str | None
    length: int
    capabilities: KeyCapability
    creation_time: datetime | None
    expiration_time: datetime | None
    secret: bool
    revoked: bool = False
    expired: bool = False
    invalid: bool = False
    signatures: tuple[KeySignature, ...] = ()


@dataclass(frozen=True)
class PrimaryKey:
    key_id: str
    fingerprint: str | None
    key_type: str | None
    length: int
    capabilities: KeyCapability
    total_capabilities: KeyCapability
    creation_time: datetime | None
    expiration_time: datetime | None
    secret: bool
    owner_trust: TrustLevel
    calculated_trust: TrustLevel
    user_ids: tuple[UserId, ...] = ()
    attributes: tuple[UserAttribute, ...] = ()
    subkeys: tuple[Subkey, ...] = ()
    signatures: tuple[KeySignature, ...] = ()
    revoked: bool = False
    expired: bool = False
    invalid: bool = False
    disabled: bool = False

    @property
    def primary_user_id(self) -> UserId | None:
        for uid in self.user_ids:
            if uid.primary:
                return uid
        return self.user_ids[0] if self.user_ids else None


@dataclass(frozen=True)
class Signature:
    """A signature found while decrypting or verifying data."""

    status: SignatureStatus
    key_id: str | None = None
    key_fingerprint: str | None = None
    primary_key_fingerprint: str | None = None
    user_name: str | None = None
    key_type: str | None = None
    hash_algorithm: str | None = None
    timestamp: datetime | None = None
    expiration: datetime | None = None
    trust_level: TrustLevel = TrustLevel.UNKNOWN

    @property
    def is_valid(self) -> bool:
        return SignatureStatus.VALID in self.status


@dataclass(frozen=True)
class KeyServerKey:
    """A search hit reported by a keyserver."""

    key_id: str
    key_type: str | None
    length: int
    creation_time: datetime | None
    expiration_time: datetime | None
    revoked: bool = False
    expired: bool = False
    disabled: bool = False
    user_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ImportedKey:
    fingerprint: str
    successful: bool
    secret: bool = False


@dataclass
class SignatureBuilder:
    """Mutable accumulator for a :class:`Signature` during verification."""

    status: SignatureStatus = SignatureStatus.NONE
    key_id: str | None = None
    key_fingerprint: str | None = None
    primary_key_fingerprint: str | None = None
    user_name: str | None = None
    key_type: str | None = None
    hash_algorithm: str | None = None
    timestamp: datetime | None = None
    expiration: datetime | None = None
    trust_level: TrustLevel = TrustLevel.UNKNOWN
    filled: bool = False
    _frozen: bool = field(default=False, repr=False)

    def freeze(self) -> Signature:
        if self._frozen:
            raise RuntimeError("Signature has already been built")
        self._frozen = True
        return Signature(
            status=self.status,
            key_id=self.key_id,
            key_fingerprint=self.key_fingerprint,
            primary_key_fingerprint=self.primary_key_fingerprint,
            user_name=self.user_name,
            key_type=self.key_type,
            hash_algorithm=self.hash_algorithm,
            timestamp=self.timestamp,
            expiration=self.expiration,
            trust_level=self.trust_level,
        )


class SecureString:
    """A secret held in a mutable buffer so it can be wiped after use."""

    __slots__ = ("_value",)

    def __init__(self, value: str | bytes | bytearray) -> None:
        if isinstance(value, str):
            self._value = bytearray(value.encode("utf-8"))
        else:
            self._value = bytearray(value)

    def get(self) -> str:
        return self._value.decode("utf-8")

    def encode_line(self) -> bytearray:
        """Return the secret as a newline-terminated buffer. The caller must zero it."""
        line = bytearray(len(self._value) + 1)
        line[: len(self._value)] = self._value
        line[-1] = 0x0A
        return line

    def copy(self) -> SecureString:
        return SecureString(self._value)

    def __repr__(self) -> str:
        return "SecureString(****)"

    def __str__(self) -> str:
        return "****"

    def __len__(self) -> int:
        return len(self._value)

    def __bool__(self) -> bool:
        return len(self._value) != 0

    def clear(self) -> None:
        zero_buffer(self._value)
        self._value = bytearray()


def zero_buffer(buffer: bytearray | None) -> None:
    if buffer:
        buffer[:] = bytes(len(buffer))


class Result(Generic[T]):
    __slots__ = ("_value", "_error", "_is_ok")

    def __init__(self, value: T | None, error: Exception | None, is_ok: bool) -> None:
        self._value = value
        self._error = error
        self._is_ok = is_ok

    @staticmethod
    def ok(value: T) -> Result[T]:
        return Result(value, None, True)

    @staticmethod
    def err(error: Exception) -> Result[T]:
        return Result(None, error, False)

    def is_ok(self) -> bool:
        return self._is_ok

    def is_err(self) -> bool:
        return not self._is_ok

    def unwrap(self) -> T:
        if not self._is_ok:
            raise self._error if self._error else RuntimeError("Result is error but no error set")
        return self._value  # type: ignore

    def unwrap_err(self) -> Exception:
        if self._is_ok:
            raise RuntimeError("Called unwrap_err on Ok result")
        return self._error  # type: ignore

    def unwrap_or(self, default: T) -> T:
        return self._value if self._is_ok else default  # type: ignore

    def map(self, fn: Callable[[T], U]) -> Result[U]:
        if self._is_ok:
            try:
                return Result.ok(fn(self._value))  # type: ignore
            except Exception as e:
                return Result.err(e)
        return Result.err(self._error)  # type: ignore
