"""Tests for individual key edit commands."""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from gpg_bridge.edit import MENU_PROMPT, PASSWORD_PROMPT, EditContext, Transition
from gpg_bridge.edit_commands import (
    AddPhotoCommand,
    AddRevokerCommand,
    AddSubkeyCommand,
    AddUidCommand,
    ChangePasswordCommand,
    DeleteSignaturesCommand,
    DisableCommand,
    ExpireCommand,
    QuitCommand,
    RawCommand,
    RevokeUidCommand,
    SelectSubkeyCommand,
    SelectUidCommand,
    SetPreferencesCommand,
    SetPrimaryUidCommand,
    SetTrustCommand,
    ShowPreferencesCommand,
    SignKeyCommand,
    parse_preferences,
    resolve_user_id,
)
from gpg_bridge.errors import KeyEditFailedError, ProtocolViolationError
from gpg_bridge.keylisting import EditKey, EditKeyBuilder
from gpg_bridge.options import (
    CertificationLevel,
    KeySigningOptions,
    RevocationCode,
    RevocationReason,
    UserPreferences,
)
from gpg_bridge.state import SessionState
from gpg_bridge.status import NeedPassphraseEvent, StatusKind
from gpg_bridge.types import KeyCapability, KeySignature, SecureString, SignatureStatus, TrustLevel

LISTING = [
    "pub:u:4096:1:89ABCDEF01234567:1704067200:::u:::scESC:",
    "fpr:::::::::0123456789ABCDEF0123456789ABCDEF01234567:",
    "sub:u:4096:1:1122334455667788:1704067200::::::e:",
    "fpr:::::::::AAAABBBBCCCCDDDDEEEEFFFF1122334455667788:",
    "uid:u::::::::Alice <alice@example.org>::::1,p:",
    "uid:u::::::::Alice Work <alice@work.example>::::2,:",
    "uat:u::::::::1 2048::::3,:",
]


def make_key(lines: list[str] = LISTING) -> EditKey:
    builder = EditKeyBuilder()
    for line in lines:
        builder.feed(line)
    return builder.freeze()


@pytest.fixture
def ctx() -> EditContext:
    key = make_key()
    return EditContext(
        session=MagicMock(),
        state=SessionState(),
        passwords=MagicMock(),
        queue=deque(),
        original=key,
        current=key,
    )


def sent(ctx: EditContext) -> list[str]:
    return [call.args[0] for call in ctx.session.send_line.call_args_list]  # type: ignore[attr-defined]


def run_menu(ctx: EditContext, command, prompts: list[str]) -> list[Transition]:
    ctx.queue.appendleft(command)
    return [command.on_prompt(ctx, prompt) for prompt in prompts]


class TestResolveUserId:
    def test_selectors(self) -> None:
        key = make_key()
        assert resolve_user_id(key, "Alice Work <alice@work.example>").index == 2
        assert resolve_user_id(key, 1).name == "Alice <alice@example.org>"
        assert resolve_user_id(key, -1).attribute

    @pytest.mark.parametrize("selector", ["Nobody", 9, -4])
    def test_missing(self, selector: str | int) -> None:
        with pytest.raises(KeyEditFailedError, match="was not found"):
            resolve_user_id(make_key(), selector)


class TestSelection:
    """Test the selection commands."""

    def test_select_user_ids_and_attributes(self, ctx: EditContext) -> None:
        """Test the selection is reset first and the last line finishes the command."""
        transitions = run_menu(ctx, SelectUidCommand([2], attributes=[0]), [MENU_PROMPT] * 3)
        assert sent(ctx) == ["uid 0", "uid 2", "uid 3"]
        assert transitions == [Transition.CONTINUE, Transition.CONTINUE, Transition.DONE]

    def test_missing_attribute(self, ctx: EditContext) -> None:
        with pytest.raises(KeyEditFailedError):
            SelectUidCommand([], attributes=[1]).on_prompt(ctx, MENU_PROMPT)

    def test_select_subkeys(self, ctx: EditContext) -> None:
        transitions = run_menu(ctx, SelectSubkeyCommand(["55667788"]), [MENU_PROMPT] * 2)
        assert sent(ctx) == ["key 0", "key 1"]
        assert transitions[-1] == Transition.DONE

    @pytest.mark.parametrize("subkey", ["DEADBEEF", 2, 0])
    def test_missing_subkey(self, ctx: EditContext, subkey: str | int) -> None:
        with pytest.raises(KeyEditFailedError):
            SelectSubkeyCommand([subkey]).on_prompt(ctx, MENU_PROMPT)

    def test_selection_needs_a_listing(self, ctx: EditContext) -> None:
        ctx.current = None
        with pytest.raises(ProtocolViolationError):
            SelectUidCommand([1]).on_prompt(ctx, MENU_PROMPT)


class TestUserIdCommands:
    def test_add_uid(self, ctx: EditContext) -> None:
        """Test the new user ID's fields are answered."""
        command = AddUidCommand("Alice", "alice@example.org", "home")
        prompts = [MENU_PROMPT, "keygen.name", "keygen.email", "keygen.comment", MENU_PROMPT]
        transitions = run_menu(ctx, command, prompts)
        assert sent(ctx) == ["adduid", "Alice", "alice@example.org", "home"]
        assert transitions[-1] == Transition.NEXT

    def test_add_uid_restores_primary(self, ctx: EditContext) -> None:
        """Test the original primary user ID is made primary again."""
        command = AddUidCommand("Alice")
        run_menu(ctx, command, [MENU_PROMPT, MENU_PROMPT])
        follow_up = ctx.queue[1]
        assert isinstance(follow_up, SetPrimaryUidCommand)
        assert follow_up.user_id == 1

    def test_add_uid_restores_primary_attribute(self, ctx: EditContext) -> None:
        """Test a primary photo ID is restored by number, since it has no name."""
        key = make_key(
            [*LISTING[:4], "uid:u::::::::Alice <alice@example.org>::::1,:", "uat:u::::::::1 2048::::2,p:"]
        )
        ctx.original = ctx.current = key
        run_menu(ctx, AddUidCommand("Alice"), [MENU_PROMPT, MENU_PROMPT])
        follow_up = ctx.queue[1]
        assert isinstance(follow_up, SetPrimaryUidCommand)
        assert follow_up.user_id == 2
        assert follow_up.on_prompt(ctx, MENU_PROMPT) == Transition.NEXT
        assert sent(ctx) == ["adduid"]

    def test_add_photo(self, ctx: EditContext) -> None:
        command = AddPhotoCommand(Path("/tmp/alice.jpg"))
        prompts = [MENU_PROMPT, "photoid.jpeg.add", "photoid.jpeg.size", "photoid.jpeg.okay", MENU_PROMPT]
        transitions = run_menu(ctx, command, prompts)
        assert sent(ctx) == ["addphoto", "/tmp/alice.jpg", "Y", "Y"]
        assert transitions[-1] == Transition.NEXT
        assert isinstance(ctx.queue[1], SetPrimaryUidCommand)

    def test_show_preferences_keeps_listing(self, ctx: EditContext) -> None:
        command = ShowPreferencesCommand()
        run_menu(ctx, command, [MENU_PROMPT, MENU_PROMPT])
        assert sent(ctx) == ["showpref"]
        assert command.listing is ctx.current

    def test_parse_preferences(self) -> None:
        preferences = parse_preferences("S9 S8 S99 H10 H8 Z2 Z0 [mdc] [no-ks-modify]", primary=True)
        assert preferences.ciphers == ["AES256", "AES192", "S99"]
        assert preferences.hashes == ["SHA512", "SHA256"]
        assert preferences.compressions == ["ZLIB", "Uncompressed"]
        assert preferences.primary
        assert parse_preferences("").to_setpref() == ""

    def test_add_uid_with_preferences(self, ctx: EditContext) -> None:
        command = AddUidCommand("Alice", preferences=UserPreferences(ciphers=["AES256"], primary=True))
        run_menu(ctx, command, [MENU_PROMPT, MENU_PROMPT])
        assert [type(item) for item in list(ctx.queue)[1:]] == [SetPreferencesCommand, SetPrimaryUidCommand]
        assert ctx.queue[2].user_id == -1  # type: ignore[attr-defined]

    def test_set_primary(self, ctx: EditContext) -> None:
        transitions = run_menu(ctx, SetPrimaryUidCommand(2), [MENU_PROMPT] * 4)
        assert sent(ctx) == ["uid 0", "uid 2", "primary"]
        assert transitions[-1] == Transition.NEXT

    def test_set_primary_already_primary(self, ctx: EditContext) -> None:
        """Test nothing is sent when the user ID is already primary."""
        assert SetPrimaryUidCommand(1).on_prompt(ctx, MENU_PROMPT) == Transition.NEXT
        assert sent(ctx) == []

    def test_set_preferences(self, ctx: EditContext) -> None:
        preferences = UserPreferences(ciphers=["AES256"], hashes=["SHA512"], keyserver="hkps://keys.example")
        command = SetPreferencesCommand(preferences, user_id=2)
        prompts = [MENU_PROMPT, MENU_PROMPT, MENU_PROMPT, "keyedit.setpref.okay", MENU_PROMPT, "keyedit.add_keyserver"]
        run_menu(ctx, command, prompts)
        assert sent(ctx) == [
            "uid 0",
            "uid 2",
            "setpref AES256 SHA512",
            "Y",
            "keyserver",
            "hkps://keys.example",
        ]

    def test_revoke_uid_reason(self, ctx: EditContext) -> None:
        """Test the explanation is sent line by line and ends with an empty line."""
        reason = RevocationReason(RevocationCode.SUPERSEDED, "first line\n\nsecond line")
        prompts = [
            MENU_PROMPT,
            "keyedit.revoke.uid.okay",
            "ask_revocation_reason.code",
            "ask_revocation_reason.text",
            "ask_revocation_reason.text",
            "ask_revocation_reason.text",
            "ask_revocation_reason.okay",
        ]
        run_menu(ctx, RevokeUidCommand(reason), prompts)
        assert sent(ctx) == ["revuid", "Y", "2", "first line", "second line", "", "Y"]

    def test_unknown_prompt_finishes_command(self, ctx: EditContext) -> None:
        command = AddUidCommand("Alice")
        run_menu(ctx, command, [MENU_PROMPT])
        assert command.on_prompt(ctx, "something.else") == Transition.NEXT


class TestSubkeyCommands:
    @pytest.mark.parametrize(
        ("key_type", "capabilities", "algorithm"),
        [
            ("RSA", KeyCapability.ENCRYPT, "6"),
            ("elg", KeyCapability.ENCRYPT, "5"),
            ("ECDH", KeyCapability.ENCRYPT, "12"),
            ("RSA", KeyCapability.SIGN, "4"),
            ("DSA", KeyCapability.SIGN, "3"),
            ("EDDSA", KeyCapability.SIGN | KeyCapability.AUTHENTICATE, "10"),
        ],
    )
    def test_algorithm(self, key_type: str, capabilities: KeyCapability, algorithm: str) -> None:
        assert AddSubkeyCommand(key_type, capabilities=capabilities).algorithm == algorithm

    def test_unsupported_algorithm(self) -> None:
        with pytest.raises(ValueError):
            AddSubkeyCommand("DSA", capabilities=KeyCapability.ENCRYPT)

    def test_add_subkey_answers(self, ctx: EditContext) -> None:
        command = AddSubkeyCommand("ECDH", curve="cv25519")
        prompts = [MENU_PROMPT, "keygen.algo", "keygen.curve", "keygen.valid", "keygen.sub.okay"]
        run_menu(ctx, command, prompts)
        assert sent(ctx) == ["addkey", "12", "cv25519", "0", "Y"]

    def test_expire_in_days(self, ctx: EditContext) -> None:
        """Test partial days are rounded up."""
        today = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        expiration = today + timedelta(days=10, hours=12)
        run_menu(ctx, ExpireCommand(expiration), [MENU_PROMPT, "keygen.valid"])
        assert sent(ctx) == ["expire", "11d"]

    def test_expire_never(self, ctx: EditContext) -> None:
        run_menu(ctx, ExpireCommand(None), [MENU_PROMPT, "keygen.valid", "keyedit.expire_multiple_subkeys.okay"])
        assert sent(ctx) == ["expire", "0", "Y"]


class TestKeyCommands:
    @pytest.mark.parametrize(
        ("level", "value"),
        [
            (TrustLevel.UNKNOWN, "1"),
            (TrustLevel.NEVER, "2"),
            (TrustLevel.MARGINAL, "3"),
            (TrustLevel.FULL, "4"),
            (TrustLevel.ULTIMATE, "5"),
        ],
    )
    def test_trust(self, ctx: EditContext, level: TrustLevel, value: str) -> None:
        run_menu(ctx, SetTrustCommand(level), [MENU_PROMPT, "edit_ownertrust.value"])
        assert sent(ctx) == ["trust", value]

    def test_sign_key(self, ctx: EditContext) -> None:
        options = KeySigningOptions(level=CertificationLevel.CASUAL, trust_depth=1, trust_level=TrustLevel.FULL)
        prompts = [
            MENU_PROMPT,
            "keyedit.sign_all.okay",
            "sign_uid.class",
            "trustsig_prompt.trust_value",
            "trustsig_prompt.trust_depth",
            "trustsig_prompt.trust_regexp",
            "sign_uid.okay",
        ]
        run_menu(ctx, SignKeyCommand(options), prompts)
        assert sent(ctx) == ["tsign", "Y", "2", "2", "1", "", "Y"]

    def test_add_revoker(self, ctx: EditContext) -> None:
        command = AddRevokerCommand("FEDCBA98", sensitive=True)
        run_menu(ctx, command, [MENU_PROMPT, "keyedit.add_revoker", "keyedit.add_revoker.okay"])
        assert sent(ctx) == ["addrevoker sensitive", "FEDCBA98", "Y"]

    def test_simple_command_finishes_on_send(self, ctx: EditContext) -> None:
        assert DisableCommand().on_prompt(ctx, MENU_PROMPT) == Transition.DONE
        assert sent(ctx) == ["disable"]

    def test_raw_command(self, ctx: EditContext) -> None:
        """Test raw commands with and without answers."""
        assert RawCommand("showpref").on_prompt(ctx, MENU_PROMPT) == Transition.DONE
        command = RawCommand("tsign", {"sign_uid.okay": "Y"})
        assert command.on_prompt(ctx, MENU_PROMPT) == Transition.CONTINUE
        assert command.on_prompt(ctx, "sign_uid.okay") == Transition.CONTINUE
        assert command.on_prompt(ctx, MENU_PROMPT) == Transition.NEXT
        assert sent(ctx) == ["showpref", "tsign", "Y"]


class TestChangePassword:
    def test_old_then_new(self, ctx: EditContext) -> None:
        """Test the old password comes from the broker and the new one is sent twice."""
        new_password = SecureString("new")
        command = ChangePasswordCommand(new_password)
        ctx.state.password_request = NeedPassphraseEvent(StatusKind.NEED_KEY_PASSPHRASE, "AAAA", "AAAA")

        run_menu(ctx, command, [MENU_PROMPT, PASSWORD_PROMPT])
        ctx.state.password_request = NeedPassphraseEvent(StatusKind.NEED_KEY_PASSPHRASE, "AAAA", "AAAA")
        command.on_prompt(ctx, PASSWORD_PROMPT)
        command.on_prompt(ctx, PASSWORD_PROMPT)

        ctx.passwords.answer.assert_called_once_with(ctx.session)  # type: ignore[attr-defined]
        calls = ctx.session.send_password.call_args_list  # type: ignore[attr-defined]
        assert [call.args[0] for call in calls] == [new_password, new_password]

    def test_empty_password_confirmed(self, ctx: EditContext) -> None:
        command = ChangePasswordCommand(None)
        run_menu(ctx, command, [MENU_PROMPT, "change_passwd.empty.okay"])
        assert sent(ctx) == ["passwd", "Y"]


class TestDeleteSignatures:
    def test_only_matching_signatures(self, ctx: EditContext) -> None:
        """Test each question is answered for the signature gpg printed before it."""
        wanted = KeySignature(
            status=SignatureStatus.VALID,
            key_id="FEDCBA9876543210",
            fingerprint=None,
            signer_name="Carol",
            creation_time=datetime(2024, 1, 2, tzinfo=UTC),
            signature_class=0x10,
            exportable=True,
        )
        command = DeleteSignaturesCommand([wanted])
        run_menu(ctx, command, [MENU_PROMPT])
        command.on_line(ctx, "sig:!::1:FEDCBA9876543210:1704153600::::Carol:10x::")
        command.on_prompt(ctx, "keyedit.delsig.valid")
        command.on_line(ctx, "sig:!::1:89ABCDEF01234567:1704067200::::Alice:13x::")
        command.on_prompt(ctx, "keyedit.delsig.valid")
        command.on_line(ctx, "sig:!::1:FEDCBA9876543210:1600000000::::Carol:10x::")
        command.on_prompt(ctx, "keyedit.delsig.valid")
        assert sent(ctx) == ["delsig", "Y", "N", "N"]


class TestQuitCommand:
    @pytest.mark.parametrize(("save", "line", "confirm"), [(True, "save", "Y"), (False, "quit", "N")])
    def test_quit(self, ctx: EditContext, save: bool, line: str, confirm: str) -> None:
        command = QuitCommand(save=save)
        assert command.on_prompt(ctx, MENU_PROMPT) == Transition.CONTINUE
        assert command.on_prompt(ctx, "keyedit.save.okay") == Transition.CONTINUE
        assert sent(ctx) == [line, confirm]

    def test_menu_again(self, ctx: EditContext) -> None:
        """Test gpg staying in the menu is a protocol error."""
        command = QuitCommand()
        command.on_prompt(ctx, MENU_PROMPT)
        with pytest.raises(ProtocolViolationError):
            command.on_prompt(ctx, MENU_PROMPT)

    def test_other_prompt(self, ctx: EditContext) -> None:
        assert QuitCommand().on_prompt(ctx, "keygen.name") == Transition.NEXT
