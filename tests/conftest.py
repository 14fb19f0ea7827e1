from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import sys
import tempfile
import time
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from gpg_bridge import GPGConfig, GPGOperations, StaticPasswordCallbacks

FAKE_GPG = Path(__file__).parent / "fixtures" / "fake_gpg.py"


@pytest.fixture
def fake_gpg(tmp_path: Path) -> Path:
    """An executable that runs the fake gpg with the current interpreter."""
    wrapper = tmp_path / "gpg"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_GPG}" "$@"\n')
    wrapper.chmod(0o755)
    return wrapper


@pytest.fixture
def gpg_log(tmp_path: Path) -> Path:
    return tmp_path / "fake_gpg.log"


@pytest.fixture
def logged(gpg_log: Path) -> Callable[[], list[str]]:
    """Lines the fake gpg logged so far: arguments and prompt answers."""

    def read() -> list[str]:
        if not gpg_log.exists():
            return []
        return gpg_log.read_text(encoding="utf-8").splitlines()

    return read


@pytest.fixture
def fake_config(fake_gpg: Path, gpg_log: Path) -> Callable[..., GPGConfig]:
    """Build a config for the fake gpg. Keyword arguments become FAKE_GPG_* variables."""

    def build(**settings: str) -> GPGConfig:
        env = {"FAKE_GPG_LOG": str(gpg_log)}
        env.update({f"FAKE_GPG_{name.upper()}": value for name, value in settings.items()})
        return GPGConfig(executable=fake_gpg, extra_env=env)

    return build


@pytest.fixture
def script_file(tmp_path: Path) -> Callable[[str], str]:
    """Write a fake gpg script and return its path."""

    def write(text: str) -> str:
        path = tmp_path / "script.txt"
        path.write_text(text.strip() + "\n", encoding="utf-8")
        return str(path)

    return write


@pytest.fixture
def static_callbacks() -> StaticPasswordCallbacks:
    return StaticPasswordCallbacks(
        key_passwords=["test-passphrase-secure"],
        cipher_passwords=["secret"],
        pins=["123456"],
    )


def _gpg_agent_can_start() -> bool:
    """Check if gpg-agent can be started in a temp directory."""
    if shutil.which("gpg") is None or shutil.which("gpg-agent") is None:
        return False

    with tempfile.TemporaryDirectory(prefix="gpg_") as tmpdir:
        gnupghome = Path(tmpdir)
        (gnupghome / "gpg-agent.conf").write_text("allow-loopback-pinentry\n")
        env = os.environ.copy()
        env["GNUPGHOME"] = str(gnupghome)
        try:
            # gpg-agent --daemon forks, so the output is not captured
            subprocess.Popen(
                ["gpg-agent", "--daemon"],
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            time.sleep(0.5)
            started = (gnupghome / "S.gpg-agent").exists()
            subprocess.run(
                ["gpgconf", "--kill", "gpg-agent"],
                env=env,
                capture_output=True,
                timeout=5,
            )
            return started
        except (OSError, subprocess.SubprocessError):
            return False


_GPG_AGENT_AVAILABLE: bool | None = None


def gpg_agent_available() -> bool:
    """Check if gpg-agent can be started (cached)."""
    global _GPG_AGENT_AVAILABLE
    if _GPG_AGENT_AVAILABLE is None:
        _GPG_AGENT_AVAILABLE = _gpg_agent_can_start()
    return _GPG_AGENT_AVAILABLE


@pytest.fixture
def gpg_home() -> Generator[Path, None, None]:
    """An isolated GNUPGHOME whose agent allows loopback pinentry.

    Uses a short /tmp path because gpg-agent's socket path has a length limit.
    """
    gnupghome = Path(tempfile.mkdtemp(prefix="gpg_"))
    gnupghome.chmod(0o700)

    agent_conf = gnupghome / "gpg-agent.conf"
    agent_conf.write_text("allow-loopback-pinentry\n")
    agent_conf.chmod(0o600)

    env = os.environ.copy()
    env["GNUPGHOME"] = str(gnupghome)

    with contextlib.suppress(OSError, subprocess.SubprocessError):
        subprocess.run(
            ["gpg-agent", "--daemon", "--homedir", str(gnupghome)],
            env=env,
            capture_output=True,
            timeout=5,
        )
        time.sleep(0.5)

    yield gnupghome

    with contextlib.suppress(OSError, subprocess.SubprocessError):
        subprocess.run(
            ["gpgconf", "--kill", "gpg-agent"],
            env=env,
            capture_output=True,
            timeout=5,
        )
    shutil.rmtree(gnupghome, ignore_errors=True)


@pytest.fixture
def gpg_ops(gpg_home: Path, static_callbacks: StaticPasswordCallbacks) -> GPGOperations:
    return GPGOperations(GPGConfig(gnupghome=gpg_home), callbacks=static_callbacks)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "slow: marks tests as slow-running")
    config.addinivalue_line("markers", "gpg_agent: marks tests as requiring gpg-agent")


def pytest_collection_modifyitems(  # noqa: ARG001
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    skip_gpg_agent = pytest.mark.skip(reason="gpg-agent cannot start in isolated environment")
    skip_posix = pytest.mark.skip(reason="The fake gpg needs a POSIX shell")

    for item in items:
        # Slow tests need a real gpg and agent
        if "slow" in item.keywords and not gpg_agent_available():
            item.add_marker(skip_gpg_agent)
        if "fake_gpg" in getattr(item, "fixturenames", ()) and os.name != "posix":
            item.add_marker(skip_posix)
