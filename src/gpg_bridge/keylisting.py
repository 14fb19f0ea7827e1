"""Parsers for gpg's colon-delimited key listings.

Field layout is documented in gnupg's ``doc/DETAILS``. :class:`KeyListingParser`
handles ``--list-keys --with-colons`` output and produces frozen key records.
:class:`EditKeyBuilder` handles the reduced listing printed by ``--edit-key``
in colon mode, which is only used to track selection state while editing.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from .status import parse_key_type, parse_optional_timestamp, parse_timestamp
from .types import (
    KeyCapability,
    KeySignature,
    PrimaryKey,
    SignatureStatus,
    Subkey,
    TrustLevel,
    UserAttribute,
    UserId,
)

logger = logging.getLogger("gpg-bridge.keylisting")

_C_ESCAPE = re.compile(r"\\x([0-9a-f]{2})", re.IGNORECASE)

_CAPABILITY_CHARS = {
    "e": KeyCapability.ENCRYPT,
    "s": KeyCapability.SIGN,
    "c": KeyCapability.CERTIFY,
    "a": KeyCapability.AUTHENTICATE,
}

_SIGNATURE_STATUS_CHARS = {
    "!": SignatureStatus.VALID,
    "-": SignatureStatus.INVALID,
    "%": SignatureStatus.ERROR,
}


def c_unescape(text: str) -> str:
    """Undo gpg's ``\\xHH`` escaping of user IDs in colon listings."""
    if "\\" not in text:
        return text
    raw = bytearray()
    last = 0
    for match in _C_ESCAPE.finditer(text):
        raw.extend(text[last : match.start()].encode("utf-8"))
        raw.append(int(match.group(1), 16))
        last = match.end()
    raw.extend(text[last:].encode("utf-8"))
    return raw.decode("utf-8", errors="replace")


def colon_field(fields: list[str], index: int) -> str:
    return fields[index] if index < len(fields) else ""


@dataclass
class _KeyBuilder:
    secret: bool
    key_id: str = ""
    fingerprint: str | None = None
    key_type: str | None = None
    length: int = 0
    capabilities: KeyCapability = KeyCapability.NONE
    total_capabilities: KeyCapability = KeyCapability.NONE
    creation_time: datetime | None = None
    expiration_time: datetime | None = None
    owner_trust: TrustLevel = TrustLevel.UNKNOWN
    calculated_trust: TrustLevel = TrustLevel.UNKNOWN
    revoked: bool = False
    expired: bool = False
    invalid: bool = False
    disabled: bool = False
    signatures: list[KeySignature] = field(default_factory=list)

    def read_key_data(self, fields: list[str]) -> None:
        validity = colon_field(fields, 1)[:1]
        if validity == "i":
            self.invalid = True
        elif validity == "d":
            self.disabled = True
        elif validity == "r":
            self.revoked = True
        elif validity == "e":
            self.expired = True
        elif validity in ("-", "q", "n", "m", "f", "u"):
            self.calculated_trust = TrustLevel.from_char(validity)

        if colon_field(fields, 2):
            self.length = int(fields[2])
        if colon_field(fields, 3):
            self.key_type = parse_key_type(fields[3])
        if colon_field(fields, 4):
            self.key_id = fields[4].upper()
        if colon_field(fields, 5):
            self.creation_time = parse_timestamp(fields[5])
        if colon_field(fields, 6):
            self.expiration_time = parse_optional_timestamp(fields[6])
        if colon_field(fields, 8):
            self.owner_trust = TrustLevel.from_char(fields[8][0])

        for char in colon_field(fields, 11):
            if char in _CAPABILITY_CHARS:
                self.capabilities |= _CAPABILITY_CHARS[char]
            elif char.lower() in _CAPABILITY_CHARS:
                self.total_capabilities |= _CAPABILITY_CHARS[char.lower()]
            elif char == "D":
                self.disabled = True

    def freeze_subkey(self) -> Subkey:
        return Subkey(
            key_id=self.key_id,
            fingerprint=self.fingerprint,
            key_type=self.key_type,
            length=self.length,
            capabilities=self.capabilities,
            creation_time=self.creation_time,
            expiration_time=self.expiration_time,
            secret=self.secret,
            revoked=self.revoked,
            expired=self.expired,
            invalid=self.invalid,
            signatures=tuple(self.signatures),
        )


@dataclass
class _UserBuilder:
    attribute: bool
    name: str = ""
    calculated_trust: TrustLevel = TrustLevel.UNKNOWN
    creation_time: datetime | None = None
    revoked: bool = False
    signatures: list[KeySignature] = field(default_factory=list)


class KeyListingParser:
    """Incremental parser for ``--with-colons --fixed-list-mode`` key listings.

    Signatures attach to the most recent user ID, else the most recent
    subkey, else the primary key. The first user ID listed is the primary one.
    """

    def __init__(self) -> None:
        self._keys: list[PrimaryKey] = []
        self._primary: _KeyBuilder | None = None
        self._subkey: _KeyBuilder | None = None
        self._user: _UserBuilder | None = None
        self._subkeys: list[Subkey] = []
        self._users: list[UserId] = []
        self._attributes: list[UserAttribute] = []
        self._primary_signatures: list[KeySignature] = []

    @property
    def keys(self) -> list[PrimaryKey]:
        return list(self._keys)

    def feed(self, line: str) -> None:
        fields = line.rstrip("\r\n").split(":")
        record = fields[0]
        try:
            if record in ("sig", "rev"):
                self._add_signature(fields)
            elif record in ("uid", "uat"):
                self._finish_user()
                self._start_user(fields)
            elif record in ("pub", "sec"):
                self._finish_primary()
                self._primary = _KeyBuilder(secret=record == "sec")
                self._primary.read_key_data(fields)
            elif record in ("sub", "ssb"):
                self._finish_subkey()
                self._finish_user()
                if self._primary is not None:
                    self._subkey = _KeyBuilder(secret=record == "ssb")
                    self._subkey.read_key_data(fields)
            elif record == "fpr":
                target = self._subkey or self._primary
                if target is not None and colon_field(fields, 9):
                    target.fingerprint = fields[9].upper()
            elif record in ("crt", "crs"):
                # X.509 certificates are not modelled; they end the current key
                self._finish_primary()
        except ValueError as e:
            logger.warning(f"Skipping malformed {record} record: {e}")

    def finish(self) -> list[PrimaryKey]:
        self._finish_primary()
        return self.keys

    def _add_signature(self, fields: list[str]) -> None:
        if self._primary is None:
            return
        signature_class: int | None = None
        exportable = False
        class_field = colon_field(fields, 10)
        if len(class_field) >= 2:
            signature_class = int(class_field[:2], 16)
            exportable = class_field[2:3] == "x"

        signature = KeySignature(
            status=_SIGNATURE_STATUS_CHARS.get(colon_field(fields, 1)[:1], SignatureStatus.NONE),
            key_id=colon_field(fields, 4).upper() or None,
            fingerprint=colon_field(fields, 12).upper() or None,
            signer_name=c_unescape(fields[9]) if colon_field(fields, 9) else None,
            creation_time=parse_timestamp(fields[5]) if colon_field(fields, 5) else None,
            signature_class=signature_class,
            exportable=exportable,
            revocation=fields[0] == "rev",
        )
        if self._user is not None:
            self._user.signatures.append(signature)
        elif self._subkey is not None:
            self._subkey.signatures.append(signature)
        else:
            self._primary_signatures.append(signature)

    def _start_user(self, fields: list[str]) -> None:
        if self._primary is None:
            return
        # A user ID that follows a subkey belongs to the primary key
        self._finish_subkey()
        validity = colon_field(fields, 1)[:1]
        self._user = _UserBuilder(
            attribute=fields[0] == "uat",
            name=c_unescape(colon_field(fields, 9)),
            calculated_trust=TrustLevel.from_char(validity),
            creation_time=parse_timestamp(fields[5]) if colon_field(fields, 5) else None,
            revoked=validity == "r",
        )

    def _finish_user(self) -> None:
        user = self._user
        if user is None:
            return
        self._user = None
        primary = not self._users and not self._attributes
        if user.attribute:
            self._attributes.append(
                UserAttribute(
                    primary=primary,
                    calculated_trust=user.calculated_trust,
                    creation_time=user.creation_time,
                    signatures=tuple(user.signatures),
                    revoked=user.revoked,
                )
            )
        else:
            self._users.append(
                UserId(
                    name=user.name,
                    primary=primary,
                    calculated_trust=user.calculated_trust,
                    creation_time=user.creation_time,
                    signatures=tuple(user.signatures),
                    revoked=user.revoked,
                )
            )

    def _finish_subkey(self) -> None:
        if self._subkey is not None:
            self._subkeys.append(self._subkey.freeze_subkey())
            self._subkey = None

    def _finish_primary(self) -> None:
        self._finish_subkey()
        self._finish_user()
        builder = self._primary
        if builder is not None:
            self._keys.append(
                PrimaryKey(
                    key_id=builder.key_id,
                    fingerprint=builder.fingerprint,
                    key_type=builder.key_type,
                    length=builder.length,
                    capabilities=builder.capabilities,
                    total_capabilities=builder.total_capabilities,
                    creation_time=builder.creation_time,
                    expiration_time=builder.expiration_time,
                    secret=builder.secret,
                    owner_trust=builder.owner_trust,
                    calculated_trust=builder.calculated_trust,
                    user_ids=tuple(self._users),
                    attributes=tuple(self._attributes),
                    subkeys=tuple(self._subkeys),
                    signatures=tuple(self._primary_signatures),
                    revoked=builder.revoked,
                    expired=builder.expired,
                    invalid=builder.invalid,
                    disabled=builder.disabled,
                )
            )
        self._primary = None
        self._subkeys = []
        self._users = []
        self._attributes = []
        self._primary_signatures = []


def parse_key_listing(lines: Iterable[str]) -> list[PrimaryKey]:
    parser = KeyListingParser()
    for line in lines:
        parser.feed(line)
    return parser.finish()


# Edit-mode listing


@dataclass(frozen=True)
class EditUserId:
    """A user ID or attribute as shown by ``--edit-key`` in colon mode."""

    index: int
    name: str
    attribute: bool
    primary: bool
    selected: bool
    revoked: bool
    preferences: str


@dataclass(frozen=True)
class EditSubkey:
    key_id: str
    fingerprint: str | None


@dataclass(frozen=True)
class EditKey:
    key_id: str
    fingerprint: str | None
    user_ids: tuple[EditUserId, ...] = ()
    subkeys: tuple[EditSubkey, ...] = ()

    @property
    def primary_user_id(self) -> EditUserId | None:
        for uid in self.user_ids:
            if uid.primary:
                return uid
        return None

    @property
    def selected_user_ids(self) -> list[EditUserId]:
        return [uid for uid in self.user_ids if uid.selected]

    def find_user_id(self, name: str) -> EditUserId | None:
        for uid in self.user_ids:
            if not uid.attribute and uid.name == name:
                return uid
        return None

    def subkey_position(self, key: str) -> int | None:
        """1-based position of the subkey with this fingerprint or key ID, as ``key N`` expects."""
        key = key.upper()
        for position, subkey in enumerate(self.subkeys, 1):
            if subkey.fingerprint == key or subkey.key_id == key or subkey.key_id.endswith(key):
                return position
        return None


EDIT_LISTING_RECORDS = frozenset({"pub", "sec", "sub", "ssb", "fpr", "uid", "uat", "rvk", "grp"})


class EditKeyBuilder:
    """Accumulates one edit-mode listing, starting at its ``pub`` line."""

    def __init__(self) -> None:
        self._key_id = ""
        self._fingerprint: str | None = None
        self._user_ids: list[EditUserId] = []
        self._subkeys: list[list[str | None]] = []
        self._in_subkey = False
        self._frozen = False

    @staticmethod
    def starts_listing(line: str) -> bool:
        return line.startswith(("pub:", "sec:"))

    def feed(self, line: str) -> bool:
        """Consume one listing line. Returns False if ``line`` is not part of a listing."""
        if not line.strip():
            return False
        fields = line.split(":")
        record = fields[0]
        if record not in EDIT_LISTING_RECORDS:
            return False

        if record in ("pub", "sec"):
            self._key_id = colon_field(fields, 4).upper()
            self._in_subkey = False
        elif record in ("sub", "ssb"):
            self._subkeys.append([colon_field(fields, 4).upper(), None])
            self._in_subkey = True
        elif record == "fpr":
            fingerprint = colon_field(fields, 9).upper() or None
            if self._in_subkey and self._subkeys:
                self._subkeys[-1][1] = fingerprint
            else:
                self._fingerprint = fingerprint
        elif record in ("uid", "uat"):
            self._in_subkey = False
            self._user_ids.append(self._read_user_id(fields))
        return True

    def _read_user_id(self, fields: list[str]) -> EditUserId:
        # Field 13 is "N,flags" where N is the number used by the uid command
        number, _, flags = colon_field(fields, 13).partition(",")
        index = int(number) if number.isdigit() else len(self._user_ids) + 1
        return EditUserId(
            index=index,
            name=c_unescape(colon_field(fields, 9)),
            attribute=fields[0] == "uat",
            primary="p" in flags,
            selected="s" in flags,
            revoked="r" in flags or colon_field(fields, 1)[:1] == "r",
            preferences=colon_field(fields, 12),
        )

    def freeze(self) -> EditKey:
        if self._frozen:
            raise RuntimeError("Edit listing has already been built")
        self._frozen = True
        return EditKey(
            key_id=self._key_id,
            fingerprint=self._fingerprint,
            user_ids=tuple(self._user_ids),
            subkeys=tuple(EditSubkey(key_id or "", fpr) for key_id, fpr in self._subkeys),
        )
