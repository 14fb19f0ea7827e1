"""Option structures translated into gpg command-line arguments."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, Flag, auto
from pathlib import Path

from .types import SecureString, TrustLevel


class OutputFormat(Enum):
    BINARY = "binary"
    ASCII = "ascii"


@dataclass
class OutputOptions:
    format: OutputFormat = OutputFormat.BINARY
    comments: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        args: list[str] = []
        if self.format == OutputFormat.ASCII:
            args.append("--armor")
        for comment in self.comments:
            if comment:
                args.extend(["--comment", comment])
        return args


@dataclass
class EncryptionOptions:
    recipients: list[str] = field(default_factory=list)
    hidden_recipients: list[str] = field(default_factory=list)
    password: SecureString | None = None
    cipher: str | None = None
    always_trust_recipients: bool = False

    @property
    def symmetric(self) -> bool:
        return bool(self.password)


@dataclass
class SigningOptions:
    signers: list[str] = field(default_factory=list)
    detached: bool = False
    hash: str | None = None


@dataclass
class VerificationOptions:
    keyring_files: list[Path] = field(default_factory=list)
    ignore_default_keyring: bool = False
    auto_fetch_keys: bool = False
    keyserver: str | None = None
    assume_binary_input: bool = False

    def to_args(self) -> list[str]:
        args: list[str] = []
        if self.ignore_default_keyring:
            args.append("--no-default-keyring")
        for keyring in self.keyring_files:
            args.extend(["--keyring", str(Path(keyring).resolve())])
        if self.auto_fetch_keys:
            locate = ["keyserver"] if self.keyserver else []
            args.extend(["--auto-key-locate", ",".join(locate + ["local", "wkd"])])
        if self.keyserver:
            args.extend(["--keyserver", self.keyserver, "--keyserver-options", "auto-key-retrieve"])
        if self.assume_binary_input:
            args.append("--no-armor")
        return args


@dataclass
class DecryptionOptions(VerificationOptions):
    password: SecureString | None = None


class ExportOptions(Flag):
    DEFAULT = 0
    CLEAN_KEYS = auto()
    EXCLUDE_ATTRIBUTES = auto()
    EXPORT_LOCAL_SIGNATURES = auto()
    EXPORT_SENSITIVE_REVOKER_INFO = auto()
    MINIMIZE_KEYS = auto()
    RESET_SUBKEY_PASSWORD = auto()
    CLOBBER_MASTER_SECRET_KEY = auto()


_EXPORT_OPTION_NAMES = {
    ExportOptions.CLEAN_KEYS: "export-clean",
    ExportOptions.EXCLUDE_ATTRIBUTES: "no-export-attributes",
    ExportOptions.EXPORT_LOCAL_SIGNATURES: "export-local-sigs",
    ExportOptions.EXPORT_SENSITIVE_REVOKER_INFO: "export-sensitive-revkeys",
    ExportOptions.MINIMIZE_KEYS: "export-minimal",
    ExportOptions.RESET_SUBKEY_PASSWORD: "export-reset-subkey-passwd",
}


def export_args(options: ExportOptions, secret: bool) -> list[str]:
    args: list[str] = []
    names = [name for flag, name in _EXPORT_OPTION_NAMES.items() if flag in options]
    if names:
        args.extend(["--export-options", ",".join(names)])
    if secret:
        if ExportOptions.CLOBBER_MASTER_SECRET_KEY in options:
            args.append("--export-secret-subkeys")
        else:
            args.append("--export-secret-keys")
    else:
        args.append("--export")
    return args


class ImportOptions(Flag):
    DEFAULT = 0
    CLEAN_KEYS = auto()
    IMPORT_LOCAL_SIGNATURES = auto()
    MERGE_ONLY = auto()
    MINIMIZE_KEYS = auto()


_IMPORT_OPTION_NAMES = {
    ImportOptions.CLEAN_KEYS: "import-clean",
    ImportOptions.IMPORT_LOCAL_SIGNATURES: "import-local-sigs",
    ImportOptions.MERGE_ONLY: "merge-only",
    ImportOptions.MINIMIZE_KEYS: "import-minimal",
}


def import_args(options: ImportOptions) -> list[str]:
    names = [name for flag, name in _IMPORT_OPTION_NAMES.items() if flag in options]
    return ["--import-options", ",".join(names)] if names else []


class ListingSignatures(Enum):
    IGNORE = "ignore"
    RETRIEVE = "retrieve"  # --list-sigs
    VERIFY = "verify"  # --check-sigs


class KeyDeletion(Enum):
    SECRET = "secret"
    PUBLIC_AND_SECRET = "public_and_secret"


@dataclass
class KeyServerOptions:
    keyserver: str = "hkps://keys.openpgp.org"
    http_proxy: str | None = None
    timeout: int | None = None

    def to_args(self) -> list[str]:
        args = ["--keyserver", self.keyserver]
        server_options: list[str] = []
        if self.http_proxy:
            server_options.append(f"http-proxy={self.http_proxy}")
        if self.timeout:
            server_options.append(f"timeout={self.timeout}")
        if server_options:
            args.extend(["--keyserver-options", ",".join(server_options)])
        return args


class CertificationLevel(Enum):
    UNDEFINED = 0
    NONE = 1
    CASUAL = 2
    RIGOROUS = 3


@dataclass
class KeySigningOptions:
    """Options for certifying another key. Trust depth > 0 makes a trust signature."""

    level: CertificationLevel = CertificationLevel.UNDEFINED
    exportable: bool = True
    irrevocable: bool = False
    trust_depth: int = 0
    trust_level: TrustLevel = TrustLevel.MARGINAL
    trust_domain: str | None = None

    @property
    def command(self) -> str:
        prefix = "t" if self.trust_depth else ""
        if self.irrevocable:
            prefix += "nr"
        if not self.exportable:
            prefix = "l" + prefix
        return prefix + "sign"


class RevocationCode(Enum):
    UNSPECIFIED = 0
    COMPROMISED = 1
    SUPERSEDED = 2
    NO_LONGER_USED = 3


class UserRevocationCode(Enum):
    UNSPECIFIED = 0
    INVALID = 4


@dataclass
class RevocationReason:
    code: RevocationCode | UserRevocationCode = RevocationCode.UNSPECIFIED
    explanation: str = ""


@dataclass
class UserPreferences:
    """Algorithm preferences attached to a user ID."""

    ciphers: list[str] = field(default_factory=list)
    hashes: list[str] = field(default_factory=list)
    compressions: list[str] = field(default_factory=list)
    keyserver: str | None = None
    primary: bool = False

    def to_setpref(self) -> str:
        return " ".join(self.ciphers + self.hashes + self.compressions)


@dataclass
class NewKeyOptions:
    real_name: str = ""
    email: str = ""
    comment: str = ""
    key_type: str = "RSA"
    key_length: int = 0
    key_curve: str | None = None
    subkey_type: str | None = "RSA"
    subkey_length: int = 0
    subkey_curve: str | None = None
    expiration: datetime | None = None
    password: SecureString | None = None

    def batch_lines(self, now: datetime) -> list[str]:
        """Unattended key generation parameters, without the passphrase."""
        lines = [f"Key-Type: {self.key_type}"]
        if self.key_curve:
            lines.append(f"Key-Curve: {self.key_curve}")
        elif self.key_length:
            lines.append(f"Key-Length: {self.key_length}")
        if self.subkey_type:
            lines.append(f"Subkey-Type: {self.subkey_type}")
            if self.subkey_curve:
                lines.append(f"Subkey-Curve: {self.subkey_curve}")
            elif self.subkey_length:
                lines.append(f"Subkey-Length: {self.subkey_length}")
        if self.real_name.strip():
            lines.append(f"Name-Real: {self.real_name.strip()}")
        if self.email.strip():
            lines.append(f"Name-Email: {self.email.strip()}")
        if self.comment.strip():
            lines.append(f"Name-Comment: {self.comment.strip()}")
        if self.expiration is not None:
            lines.append(f"Expire-Date: {expiration_days(self.expiration, now)}d")
        else:
            lines.append("Expire-Date: 0")
        return lines


def expiration_days(expiration: datetime, now: datetime) -> int:
    """Days from today until ``expiration``, rounded up.

    gpg only accepts absolute dates up to 2038, so relative days are used.
    """
    delta = expiration - now.replace(hour=0, minute=0, second=0, microsecond=0)
    days = delta.days + (1 if delta.seconds or delta.microseconds else 0)
    return max(days, 1)


class Randomness(Enum):
    WEAK = 0
    STRONG = 1
    TOO_STRONG = 2
