"""The commands an :class:`~gpg_bridge.edit.EditSession` can run.

Most commands send one or more lines at ``keyedit.prompt``, answer the
questions gpg asks about them, and finish when the menu comes back. Commands
acting on "the selected user IDs" or "the selected subkeys" are queued behind
a :class:`SelectUidCommand` or :class:`SelectSubkeyCommand`.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from .edit import MENU_PROMPT, PASSWORD_PROMPT, EditCommand, EditContext, Transition
from .errors import KeyEditFailedError, ProtocolViolationError
from .keylisting import EditKey, EditUserId, colon_field
from .options import (
    CertificationLevel,
    KeySigningOptions,
    RevocationReason,
    UserPreferences,
    expiration_days,
)
from .status import (
    CIPHER_NAMES,
    COMPRESSION_NAMES,
    HASH_NAMES,
    NeedPassphraseEvent,
    StatusKind,
    parse_timestamp,
)
from .types import KeyCapability, KeySignature, SecureString, TrustLevel

logger = logging.getLogger("gpg-bridge.edit")

UserIdSelector = str | int
"""A user ID name, its ``uid N`` number, or a negative position (``-1`` is the last one)."""


def resolve_user_id(key: EditKey, selector: UserIdSelector) -> EditUserId:
    if isinstance(selector, str):
        found = key.find_user_id(selector)
    elif selector < 0:
        found = key.user_ids[selector] if -selector <= len(key.user_ids) else None
    else:
        found = next((uid for uid in key.user_ids if uid.index == selector), None)
    if found is None:
        raise KeyEditFailedError(extra=f"User ID {selector!r} was not found on key {key.key_id}.")
    return found


def _expiration_answer(expiration: datetime | None) -> str:
    if expiration is None:
        return "0"
    return f"{expiration_days(expiration, datetime.now(expiration.tzinfo))}d"


class MenuCommand(EditCommand):
    """Sends its menu lines one per ``keyedit.prompt`` and answers follow-up questions."""

    answers: dict[str, str] = {}
    # Finish as soon as the last line is sent because gpg asks nothing about it
    finish_after_send = False

    def __init__(self) -> None:
        self._lines: list[str] | None = None

    def menu_lines(self, ctx: EditContext) -> list[str]:
        raise NotImplementedError

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        return self.answers.get(prompt_id)

    def on_finished(self, ctx: EditContext) -> None:
        pass

    def on_prompt(self, ctx: EditContext, prompt_id: str) -> Transition:
        if prompt_id == MENU_PROMPT:
            if self._lines is None:
                self._lines = list(self.menu_lines(ctx))
            if not self._lines:
                self.on_finished(ctx)
                return Transition.NEXT
            ctx.send_line(self._lines.pop(0))
            if not self._lines and self.finish_after_send:
                self.on_finished(ctx)
                return Transition.DONE
            return Transition.CONTINUE

        answer = self.answer(ctx, prompt_id)
        if answer is None:
            return Transition.NEXT
        ctx.send_line(answer)
        return Transition.CONTINUE


class RevocationReasonAnswers:
    def __init__(self, reason: RevocationReason | None) -> None:
        self.reason = reason or RevocationReason()
        self._text: list[str] | None = None

    def answer(self, prompt_id: str) -> str | None:
        if prompt_id == "ask_revocation_reason.code":
            return str(self.reason.code.value)
        if prompt_id == "ask_revocation_reason.text":
            # gpg reads the explanation line by line until an empty one
            if self._text is None:
                lines = self.reason.explanation.splitlines()
                self._text = [line for line in lines if line.strip()] + [""]
            return self._text.pop(0) if self._text else ""
        if prompt_id == "ask_revocation_reason.okay":
            return "Y"
        return None


# Selection


class SelectUidCommand(MenuCommand):
    """Select exactly the given user IDs (and attributes, by position among attributes)."""

    needs_listing = True
    finish_after_send = True

    def __init__(self, user_ids: Sequence[UserIdSelector], attributes: Sequence[int] = ()) -> None:
        super().__init__()
        self.user_ids = list(user_ids)
        self.attributes = list(attributes)

    def menu_lines(self, ctx: EditContext) -> list[str]:
        key = ctx.require_listing()
        numbers = [resolve_user_id(key, selector).index for selector in self.user_ids]
        attributes = [uid for uid in key.user_ids if uid.attribute]
        for position in self.attributes:
            if not 0 <= position < len(attributes):
                raise KeyEditFailedError(extra=f"Attribute {position} was not found on key {key.key_id}.")
            numbers.append(attributes[position].index)
        return ["uid 0", *(f"uid {number}" for number in numbers)]


class SelectSubkeyCommand(MenuCommand):
    """Select exactly the given subkeys, by fingerprint, key ID or 1-based position."""

    needs_listing = True
    finish_after_send = True

    def __init__(self, subkeys: Sequence[str | int]) -> None:
        super().__init__()
        self.subkeys = list(subkeys)

    def menu_lines(self, ctx: EditContext) -> list[str]:
        key = ctx.require_listing()
        lines = ["key 0"]
        for subkey in self.subkeys:
            position = subkey if isinstance(subkey, int) else key.subkey_position(subkey)
            if position is None or not 1 <= position <= len(key.subkeys):
                raise KeyEditFailedError(extra=f"Subkey {subkey} was not found on key {key.key_id}.")
            lines.append(f"key {position}")
        return lines


# User IDs


class AddUidCommand(MenuCommand):
    def __init__(
        self,
        real_name: str,
        email: str = "",
        comment: str = "",
        preferences: UserPreferences | None = None,
    ) -> None:
        super().__init__()
        self.real_name = real_name
        self.email = email
        self.comment = comment
        self.preferences = preferences

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["adduid"]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        return {
            "keygen.name": self.real_name,
            "keygen.email": self.email,
            "keygen.comment": self.comment,
            "keygen.userid.cmd": "O",
        }.get(prompt_id)

    def on_finished(self, ctx: EditContext) -> None:
        ctx.enqueue_follow_up(*_new_user_id_follow_ups(ctx, self.preferences))


class AddPhotoCommand(MenuCommand):
    """Add a JPEG photo ID read from ``path``."""

    answers = {"photoid.jpeg.size": "Y", "photoid.jpeg.okay": "Y"}

    def __init__(self, path: Path, preferences: UserPreferences | None = None) -> None:
        super().__init__()
        self.path = path
        self.preferences = preferences

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["addphoto"]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "photoid.jpeg.add":
            return str(self.path)
        return super().answer(ctx, prompt_id)

    def on_finished(self, ctx: EditContext) -> None:
        ctx.enqueue_follow_up(*_new_user_id_follow_ups(ctx, self.preferences))


def _new_user_id_follow_ups(ctx: EditContext, preferences: UserPreferences | None) -> list[EditCommand]:
    """Commands to run after a user ID or attribute was appended to the key."""
    follow_ups: list[EditCommand] = []
    if preferences is not None:
        follow_ups.append(SetPreferencesCommand(preferences, user_id=-1))
    if preferences is not None and preferences.primary:
        follow_ups.append(SetPrimaryUidCommand(-1))
    elif ctx.original is not None and ctx.original.primary_user_id is not None:
        # A new self-signature can steal the primary flag; put it back.
        # By number, since attributes have no name
        follow_ups.append(SetPrimaryUidCommand(ctx.original.primary_user_id.index))
    return follow_ups


class SetPreferencesCommand(MenuCommand):
    """Set algorithm preferences on one user ID, or on the current selection."""

    needs_listing = True
    repeatable_prompts = frozenset({"keyedit.confirm_keyserver"})

    def __init__(self, preferences: UserPreferences, user_id: UserIdSelector | None = None) -> None:
        super().__init__()
        self.preferences = preferences
        self.user_id = user_id

    def menu_lines(self, ctx: EditContext) -> list[str]:
        lines: list[str] = []
        if self.user_id is not None:
            uid = resolve_user_id(ctx.require_listing(), self.user_id)
            lines += ["uid 0", f"uid {uid.index}"]
        lines.append(f"setpref {self.preferences.to_setpref()}".rstrip())
        if self.preferences.keyserver:
            lines.append("keyserver")
        return lines

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "keyedit.setpref.okay":
            return "Y"
        if prompt_id == "keyedit.add_keyserver":
            return self.preferences.keyserver or ""
        if prompt_id == "keyedit.confirm_keyserver":
            return "Y"
        return None


class SetPrimaryUidCommand(MenuCommand):
    needs_listing = True

    def __init__(self, user_id: UserIdSelector) -> None:
        super().__init__()
        self.user_id = user_id

    def menu_lines(self, ctx: EditContext) -> list[str]:
        uid = resolve_user_id(ctx.require_listing(), self.user_id)
        if uid.primary:
            return []
        return ["uid 0", f"uid {uid.index}", "primary"]


_PREFERENCE_NAMES = {"S": CIPHER_NAMES, "H": HASH_NAMES, "Z": COMPRESSION_NAMES}


def parse_preferences(text: str, primary: bool = False) -> UserPreferences:
    """Read a ``uid`` record's preference field, such as ``S9 S8 H10 H8 Z2 Z1 [mdc]``.

    Unknown algorithm numbers are kept in gpg's notation so ``setpref`` accepts them back.
    """
    preferences = UserPreferences(primary=primary)
    targets = {"S": preferences.ciphers, "H": preferences.hashes, "Z": preferences.compressions}
    for token in text.split():
        kind, code = token[:1], token[1:]
        if kind in targets and code.isdigit():
            targets[kind].append(_PREFERENCE_NAMES[kind].get(int(code), token))
    return preferences


class ShowPreferencesCommand(MenuCommand):
    """Have gpg print the key with preferences, and keep that listing in ``listing``."""

    def __init__(self) -> None:
        super().__init__()
        self.listing: EditKey | None = None

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["showpref"]

    def on_finished(self, ctx: EditContext) -> None:
        self.listing = ctx.current


class DeleteUidCommand(MenuCommand):
    """Delete the selected user IDs."""

    answers = {"keyedit.remove.uid.okay": "Y"}

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["deluid"]


class RevokeUidCommand(MenuCommand):
    """Revoke the selected user IDs."""

    repeatable_prompts = frozenset({"ask_revocation_reason.text", "keyedit.revoke.uid.okay"})

    def __init__(self, reason: RevocationReason | None = None) -> None:
        super().__init__()
        self._reason = RevocationReasonAnswers(reason)

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["revuid"]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "keyedit.revoke.uid.okay":
            return "Y"
        return self._reason.answer(prompt_id)


# Subkeys


_ENCRYPTION_ALGORITHMS = {"RSA": "6", "ELG": "5", "ELG-E": "5", "ECC": "12", "ECDH": "12"}
_SIGNING_ALGORITHMS = {"RSA": "4", "DSA": "3", "ECC": "10", "ECDSA": "10", "EDDSA": "10"}


class AddSubkeyCommand(MenuCommand):
    answers = {"keygen.valid.okay": "Y", "keygen.sub.okay": "Y", "keygen.flags": "Q"}

    def __init__(
        self,
        key_type: str = "RSA",
        length: int = 0,
        capabilities: KeyCapability = KeyCapability.ENCRYPT,
        expiration: datetime | None = None,
        curve: str | None = None,
    ) -> None:
        super().__init__()
        table = _ENCRYPTION_ALGORITHMS if KeyCapability.ENCRYPT in capabilities else _SIGNING_ALGORITHMS
        algorithm = table.get(key_type.upper())
        if algorithm is None:
            raise ValueError(f"Cannot add a {key_type} subkey with capabilities {capabilities}")
        self.algorithm = algorithm
        self.length = length
        self.expiration = expiration
        self.curve = curve

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["addkey"]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "keygen.algo":
            return self.algorithm
        if prompt_id == "keygen.size":
            return str(self.length) if self.length else ""
        if prompt_id == "keygen.curve":
            return self.curve or ""
        if prompt_id == "keygen.valid":
            return _expiration_answer(self.expiration)
        return super().answer(ctx, prompt_id)


class DeleteSubkeyCommand(MenuCommand):
    """Delete the selected subkeys."""

    answers = {"keyedit.remove.subkey.okay": "Y"}

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["delkey"]


class RevokeSubkeyCommand(MenuCommand):
    """Revoke the selected subkeys."""

    repeatable_prompts = frozenset({"ask_revocation_reason.text"})

    def __init__(self, reason: RevocationReason | None = None) -> None:
        super().__init__()
        self._reason = RevocationReasonAnswers(reason)

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["revkey"]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "keyedit.revoke.subkey.okay":
            return "Y"
        return self._reason.answer(prompt_id)


class ExpireCommand(MenuCommand):
    """Change the expiration of the selected subkeys, or of the primary key if none are selected."""

    answers = {"keygen.valid.okay": "Y", "keyedit.expire_multiple_subkeys.okay": "Y"}

    def __init__(self, expiration: datetime | None) -> None:
        super().__init__()
        self.expiration = expiration

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["expire"]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "keygen.valid":
            return _expiration_answer(self.expiration)
        return super().answer(ctx, prompt_id)


# Key-wide settings


class ChangePasswordCommand(MenuCommand):
    handles_passwords = True
    repeatable_prompts = frozenset({PASSWORD_PROMPT})
    answers = {"change_passwd.empty.okay": "Y"}

    def __init__(self, new_password: SecureString | None) -> None:
        super().__init__()
        self.new_password = new_password
        self._old_password_sent = False

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["passwd"]

    def on_prompt(self, ctx: EditContext, prompt_id: str) -> Transition:
        if prompt_id != PASSWORD_PROMPT:
            return super().on_prompt(ctx, prompt_id)
        request = ctx.state.password_request
        asks_for_old = (
            isinstance(request, NeedPassphraseEvent)
            and not self._old_password_sent
            and request.kind != StatusKind.NEED_CIPHER_PASSPHRASE
        )
        if asks_for_old:
            self._old_password_sent = True
            ctx.answer_password()
        else:
            ctx.send_password(self.new_password)
        return Transition.CONTINUE


_OWNER_TRUST_VALUES = {
    TrustLevel.UNKNOWN: "1",
    TrustLevel.NEVER: "2",
    TrustLevel.MARGINAL: "3",
    TrustLevel.FULL: "4",
    TrustLevel.ULTIMATE: "5",
}


class SetTrustCommand(MenuCommand):
    def __init__(self, level: TrustLevel) -> None:
        super().__init__()
        self.level = level

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["trust"]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "edit_ownertrust.value":
            return _OWNER_TRUST_VALUES[self.level]
        if prompt_id == "edit_ownertrust.set_ultimate.okay":
            return "Y"
        return None


class SignKeyCommand(MenuCommand):
    """Certify the selected user IDs, or all of them if none are selected."""

    repeatable_prompts = frozenset(
        {"sign_uid.promote_okay", "sign_uid.local_promote_okay", "sign_uid.replace_expired_okay"}
    )
    answers = {
        "keyedit.sign_all.okay": "Y",
        "sign_uid.okay": "Y",
        "sign_uid.expire": "Y",
        "sign_uid.promote_okay": "Y",
        "sign_uid.local_promote_okay": "Y",
        "sign_uid.replace_expired_okay": "Y",
        "sign_uid.dupe_okay": "N",
    }

    def __init__(self, options: KeySigningOptions | None = None) -> None:
        super().__init__()
        self.options = options or KeySigningOptions()

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return [self.options.command]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        options = self.options
        if prompt_id == "sign_uid.class":
            return str(options.level.value if options.level != CertificationLevel.UNDEFINED else 0)
        if prompt_id == "trustsig_prompt.trust_value":
            return "2" if options.trust_level in (TrustLevel.FULL, TrustLevel.ULTIMATE) else "1"
        if prompt_id == "trustsig_prompt.trust_depth":
            return str(max(options.trust_depth, 1))
        if prompt_id == "trustsig_prompt.trust_regexp":
            return options.trust_domain or ""
        return super().answer(ctx, prompt_id)


# Signatures


def _signature_line_matches(fields: list[str], signature: KeySignature) -> bool:
    key_id = colon_field(fields, 4).upper()
    if not key_id or not signature.key_id:
        return False
    if not (key_id.endswith(signature.key_id) or signature.key_id.endswith(key_id)):
        return False
    created = colon_field(fields, 5)
    if signature.creation_time is not None and created:
        return parse_timestamp(created) == signature.creation_time
    return True


class _SignatureCorrelation:
    """Remembers the last ``sig`` line gpg printed before asking about it."""

    def __init__(self, signatures: Sequence[KeySignature] | None) -> None:
        self.signatures = list(signatures) if signatures is not None else None
        self.last: list[str] | None = None

    def observe(self, line: str) -> None:
        if line.startswith(("sig:", "rev:")):
            self.last = line.split(":")

    def wanted(self) -> bool:
        if self.signatures is None:
            return True
        if self.last is None:
            return False
        fields = self.last
        try:
            return any(_signature_line_matches(fields, sig) for sig in self.signatures)
        except ValueError:
            logger.warning(f"Unreadable signature line: {':'.join(fields)}")
            return False


class DeleteSignaturesCommand(MenuCommand):
    """Delete those signatures on the selected user IDs that match ``signatures``."""

    repeatable_prompts = frozenset(
        {
            "keyedit.delsig.valid",
            "keyedit.delsig.invalid",
            "keyedit.delsig.unknown",
            "keyedit.delsig.selfsig",
        }
    )

    def __init__(self, signatures: Sequence[KeySignature]) -> None:
        super().__init__()
        self._signatures = _SignatureCorrelation(signatures)

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["delsig"]

    def on_line(self, ctx: EditContext, line: str) -> None:
        self._signatures.observe(line)

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "keyedit.delsig.selfsig":
            # Only asked after agreeing to delete a self-signature
            return "Y"
        if prompt_id in self.repeatable_prompts:
            return "Y" if self._signatures.wanted() else "N"
        return None


class RevokeSignaturesCommand(MenuCommand):
    """Revoke certifications made by the signing key. ``None`` revokes all of them."""

    repeatable_prompts = frozenset({"ask_revoke_sig.one", "ask_revocation_reason.text"})

    def __init__(
        self,
        signatures: Sequence[KeySignature] | None = None,
        reason: RevocationReason | None = None,
    ) -> None:
        super().__init__()
        self._signatures = _SignatureCorrelation(signatures)
        self._reason = RevocationReasonAnswers(reason)

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["revsig"]

    def on_line(self, ctx: EditContext, line: str) -> None:
        self._signatures.observe(line)

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "ask_revoke_sig.one":
            return "Y" if self._signatures.wanted() else "N"
        if prompt_id == "ask_revoke_sig.okay":
            return "Y"
        return self._reason.answer(prompt_id)


# Single-line commands


class _SimpleCommand(MenuCommand):
    line = ""
    finish_after_send = True

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return [self.line]


class EnableCommand(_SimpleCommand):
    line = "enable"


class DisableCommand(_SimpleCommand):
    line = "disable"


class CleanCommand(_SimpleCommand):
    line = "clean"


class MinimizeCommand(_SimpleCommand):
    line = "minimize"


class AddRevokerCommand(MenuCommand):
    """Designate another key as allowed to revoke this one."""

    answers = {"keyedit.add_revoker.okay": "Y"}

    def __init__(self, fingerprint: str, sensitive: bool = False) -> None:
        super().__init__()
        self.fingerprint = fingerprint
        self.sensitive = sensitive

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return ["addrevoker sensitive" if self.sensitive else "addrevoker"]

    def answer(self, ctx: EditContext, prompt_id: str) -> str | None:
        if prompt_id == "keyedit.add_revoker":
            return self.fingerprint
        return super().answer(ctx, prompt_id)


class RawCommand(MenuCommand):
    """Send an arbitrary menu line and answer its prompts from ``answers``."""

    def __init__(self, line: str, answers: dict[str, str] | None = None) -> None:
        super().__init__()
        self.line = line
        self.answers = dict(answers or {})
        self.finish_after_send = not self.answers

    def menu_lines(self, ctx: EditContext) -> list[str]:
        return [self.line]


class QuitCommand(EditCommand):
    """Leave the menu, saving or discarding the changes."""

    def __init__(self, save: bool = True) -> None:
        self.save = save
        self._sent = False

    def on_prompt(self, ctx: EditContext, prompt_id: str) -> Transition:
        if prompt_id == MENU_PROMPT:
            if self._sent:
                raise ProtocolViolationError("gpg did not leave the edit menu", prompt_id)
            self._sent = True
            ctx.send_line("save" if self.save else "quit")
            return Transition.CONTINUE
        if prompt_id == "keyedit.save.okay":
            ctx.send_line("Y" if self.save else "N")
            return Transition.CONTINUE
        return Transition.NEXT

    def __repr__(self) -> str:
        return f"QuitCommand(save={self.save})"
