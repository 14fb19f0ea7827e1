"""Tests for the interactive key edit session."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from gpg_bridge.config import GPGConfig
from gpg_bridge.edit import EditSession
from gpg_bridge.edit_commands import (
    AddUidCommand,
    ChangePasswordCommand,
    DisableCommand,
    ExpireCommand,
    QuitCommand,
    RawCommand,
    SelectSubkeyCommand,
    SetPrimaryUidCommand,
)
from gpg_bridge.errors import KeyEditFailedError, OperationCancelledError, ProtocolViolationError
from gpg_bridge.passwords import StaticPasswordCallbacks
from gpg_bridge.types import SecureString

PRIMARY_FPR = "0123456789ABCDEF0123456789ABCDEF01234567"
SUBKEY_FPR = "AAAABBBBCCCCDDDDEEEEFFFF1122334455667788"

LISTING = f"""\
> pub:u:4096:1:89ABCDEF01234567:1704067200:::u:::scESC:
> fpr:::::::::{PRIMARY_FPR}:
> sub:u:4096:1:1122334455667788:1704067200::::::e:
> fpr:::::::::{SUBKEY_FPR}:
> uid:u::::::::Alice <alice@example.org>::::1,p:
> uid:u::::::::Alice Work <alice@work.example>::::2,:
"""

MENU = "? GET_LINE keyedit.prompt"


def answers(lines: list[str]) -> list[str]:
    """Prompt answers from the fake gpg log, without the ARGS line."""
    return [line for line in lines if not line.startswith("ARGS ")]


def test_args() -> None:
    session = EditSession(GPGConfig(), "ABCD", [], extra_args=["--no-auto-check-trustdb"])
    assert session.args == [
        "--no-auto-check-trustdb",
        "--ask-cert-level",
        "--expert",
        "--edit-key",
        "ABCD",
    ]


class TestEditSession:
    """Test command queue handling against scripted gpg sessions."""

    def test_add_uid_and_save(
        self, fake_config: Callable[..., GPGConfig], logged: Callable[[], list[str]]
    ) -> None:
        """Test the queue ends with an automatic save."""
        session = EditSession(fake_config(), "ABCD", [AddUidCommand("Alice", "alice@example.org")])
        assert session.run() is None
        assert answers(logged()) == [
            "keyedit.prompt=adduid",
            "keygen.name=Alice",
            "keygen.email=alice@example.org",
            "keygen.comment=",
            "keyedit.prompt=save",
        ]
        assert "--edit-key ABCD" in logged()[0]

    def test_add_uid_then_explicit_save(
        self,
        fake_config: Callable[..., GPGConfig],
        script_file: Callable[[str], str],
        logged: Callable[[], list[str]],
    ) -> None:
        """Test the full command channel transcript, including the save confirmation."""
        script = script_file(
            """
? GET_LINE keyedit.prompt
? GET_LINE keygen.name
? GET_LINE keygen.email
? GET_LINE keygen.comment
? GET_LINE keyedit.prompt
? GET_BOOL keyedit.save.okay
exit 0
"""
        )
        commands = [AddUidCommand("Alice", "alice@example.org", "work"), QuitCommand(save=True)]
        EditSession(fake_config(script=script), "ABCD", commands).run()
        assert answers(logged()) == [
            "keyedit.prompt=adduid",
            "keygen.name=Alice",
            "keygen.email=alice@example.org",
            "keygen.comment=work",
            "keyedit.prompt=save",
            "keyedit.save.okay=Y",
        ]

    def test_select_and_expire(
        self,
        fake_config: Callable[..., GPGConfig],
        script_file: Callable[[str], str],
        logged: Callable[[], list[str]],
    ) -> None:
        """Test selection uses the printed listing and the listing is returned."""
        script = script_file(
            LISTING + "\n".join([MENU, MENU, MENU, "? GET_LINE keygen.valid", MENU, "exit 0"])
        )
        commands = [SelectSubkeyCommand([SUBKEY_FPR]), ExpireCommand(None)]
        key = EditSession(fake_config(script=script), "ABCD", commands).run()

        assert answers(logged()) == [
            "keyedit.prompt=key 0",
            "keyedit.prompt=key 1",
            "keyedit.prompt=expire",
            "keygen.valid=0",
            "keyedit.prompt=save",
        ]
        assert key is not None
        assert key.fingerprint == PRIMARY_FPR
        assert [uid.name for uid in key.user_ids] == [
            "Alice <alice@example.org>",
            "Alice Work <alice@work.example>",
        ]

    def test_stale_listing_is_refreshed(
        self,
        fake_config: Callable[..., GPGConfig],
        script_file: Callable[[str], str],
        logged: Callable[[], list[str]],
    ) -> None:
        """Test a command needing the listing asks for it after another command ran."""
        script = script_file(
            LISTING
            + "\n".join([MENU, MENU])
            + "\n"
            + LISTING
            + "\n".join([MENU, MENU, MENU, MENU, "exit 0"])
        )
        commands = [RawCommand("showpref"), SetPrimaryUidCommand("Alice Work <alice@work.example>")]
        EditSession(fake_config(script=script), "ABCD", commands).run()
        assert answers(logged()) == [
            "keyedit.prompt=showpref",
            "keyedit.prompt=list",
            "keyedit.prompt=uid 0",
            "keyedit.prompt=uid 2",
            "keyedit.prompt=primary",
            "keyedit.prompt=save",
        ]

    def test_repeated_prompt(
        self, fake_config: Callable[..., GPGConfig], script_file: Callable[[str], str]
    ) -> None:
        """Test gpg asking the same question again means it rejected the answer."""
        script = script_file(
            "\n".join([MENU, "? GET_LINE keygen.name", "? GET_LINE keygen.name", "exit 0"])
        )
        session = EditSession(fake_config(script=script), "ABCD", [AddUidCommand("Alice")])
        with pytest.raises(ProtocolViolationError, match="keygen.name"):
            session.run()

    def test_unexpected_prompt(
        self, fake_config: Callable[..., GPGConfig], script_file: Callable[[str], str]
    ) -> None:
        script = script_file("? GET_BOOL weird.prompt\nexit 0")
        with pytest.raises(ProtocolViolationError) as info:
            EditSession(fake_config(script=script), "ABCD", []).run()
        assert info.value.prompt_id == "weird.prompt"

    def test_password_prompt_uses_default_password(
        self,
        fake_config: Callable[..., GPGConfig],
        script_file: Callable[[str], str],
        logged: Callable[[], list[str]],
    ) -> None:
        """Test password prompts outside a command go to the password broker."""
        script = script_file(
            "\n".join(
                [
                    MENU,
                    "! NEED_PASSPHRASE 89ABCDEF01234567 89ABCDEF01234567 1 0",
                    "? GET_HIDDEN passphrase.enter",
                    MENU,
                    "exit 0",
                ]
            )
        )
        session = EditSession(
            fake_config(script=script),
            "ABCD",
            [DisableCommand()],
            default_password=SecureString("old"),
        )
        session.run()
        assert answers(logged()) == [
            "keyedit.prompt=disable",
            "passphrase.enter=****",
            "keyedit.prompt=save",
        ]
        assert session.state.default_password is None

    def test_declined_password(
        self, fake_config: Callable[..., GPGConfig], script_file: Callable[[str], str]
    ) -> None:
        script = script_file(
            "\n".join(
                [
                    MENU,
                    "! NEED_PASSPHRASE 89ABCDEF01234567 89ABCDEF01234567 1 0",
                    "? GET_HIDDEN passphrase.enter",
                    MENU,
                    "exit 0",
                ]
            )
        )
        session = EditSession(
            fake_config(script=script),
            "ABCD",
            [DisableCommand()],
            callbacks=StaticPasswordCallbacks(),
        )
        with pytest.raises(OperationCancelledError):
            session.run()

    def test_change_password(
        self,
        fake_config: Callable[..., GPGConfig],
        script_file: Callable[[str], str],
        logged: Callable[[], list[str]],
    ) -> None:
        """Test the old password, then the new one twice."""
        script = script_file(
            "\n".join(
                [
                    MENU,
                    "! NEED_PASSPHRASE 89ABCDEF01234567 89ABCDEF01234567 1 0",
                    "? GET_HIDDEN passphrase.enter",
                    "? GET_HIDDEN passphrase.enter",
                    "? GET_HIDDEN passphrase.enter",
                    MENU,
                    "exit 0",
                ]
            )
        )
        session = EditSession(
            fake_config(script=script),
            "ABCD",
            [ChangePasswordCommand(SecureString("new"))],
            default_password=SecureString("old"),
        )
        session.run()
        assert answers(logged()) == [
            "keyedit.prompt=passwd",
            "passphrase.enter=****",
            "passphrase.enter=****",
            "passphrase.enter=****",
            "keyedit.prompt=save",
        ]

    def test_failed_exit(
        self, fake_config: Callable[..., GPGConfig], script_file: Callable[[str], str]
    ) -> None:
        script = script_file(f"{MENU}\n2> gpg: signing failed: Bad passphrase\nexit 2")
        with pytest.raises(KeyEditFailedError) as info:
            EditSession(fake_config(script=script), "ABCD", [DisableCommand()]).run()
        assert info.value.exit_code == 2
