"""Tests for gpg configuration and capability detection."""

from __future__ import annotations

import os
import platform
import stat
import subprocess
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from gpg_bridge.config import (
    EXECUTABLE_ENV_VAR,
    LOOPBACK_GPG_AGENT_CONF,
    ConfigError,
    GPGConfig,
    detect_capabilities,
    ensure_gnupg_dir,
    find_gpg_executable,
    get_gnupghome,
    parse_version_output,
    write_gpg_agent_conf,
)

VERSION_OUTPUT = """\
gpg (GnuPG) 2.4.4
libgcrypt 1.10.3
Copyright (C) 2024 g10 Code GmbH

Home: /home/alice/.gnupg
Supported algorithms:
Pubkey: RSA, ELG, DSA, ECDH, ECDSA, EDDSA
Cipher: IDEA, 3DES, CAST5, BLOWFISH, AES, AES192, AES256, TWOFISH,
        CAMELLIA128, CAMELLIA192, CAMELLIA256
Hash: SHA1, RIPEMD160, SHA256, SHA384, SHA512, SHA224
Compression: Uncompressed, ZIP, ZLIB, BZIP2
"""


class TestGnupgHome:
    """Test locating and preparing the GnuPG home."""

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test GNUPGHOME wins."""
        monkeypatch.setenv("GNUPGHOME", str(tmp_path))
        assert get_gnupghome() == tmp_path

    def test_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the default is ~/.gnupg."""
        monkeypatch.delenv("GNUPGHOME", raising=False)
        assert get_gnupghome() == Path.home() / ".gnupg"

    def test_ensure_creates_directory(self, tmp_path: Path) -> None:
        """Test the directory is created with restrictive permissions."""
        home = tmp_path / "nested" / "gnupg"
        result = ensure_gnupg_dir(home)
        assert result.is_ok()
        assert home.is_dir()
        if platform.system() != "Windows":
            assert stat.S_IMODE(home.stat().st_mode) == 0o700

    def test_ensure_reports_errors(self, tmp_path: Path) -> None:
        """Test failures come back as ConfigError."""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        result = ensure_gnupg_dir(blocker / "gnupg")
        assert result.is_err()
        assert isinstance(result.unwrap_err(), ConfigError)


class TestAgentConf:
    """Test writing gpg-agent.conf."""

    def test_write_default(self, tmp_path: Path) -> None:
        """Test the loopback configuration is written."""
        result = write_gpg_agent_conf(tmp_path)
        assert result.is_ok()
        path = result.unwrap()
        assert path.read_text() == LOOPBACK_GPG_AGENT_CONF
        assert "allow-loopback-pinentry" in path.read_text()

    def test_existing_file_is_backed_up(self, tmp_path: Path) -> None:
        """Test an existing configuration is kept as .bak."""
        conf = tmp_path / "gpg-agent.conf"
        conf.write_text("old settings\n")
        write_gpg_agent_conf(tmp_path, content="new settings\n")
        assert conf.read_text() == "new settings\n"
        assert (tmp_path / "gpg-agent.conf.bak").read_text() == "old settings\n"

    def test_no_backup(self, tmp_path: Path) -> None:
        """Test backups can be turned off."""
        (tmp_path / "gpg-agent.conf").write_text("old\n")
        write_gpg_agent_conf(tmp_path, content="new\n", backup_existing=False)
        assert not (tmp_path / "gpg-agent.conf.bak").exists()


class TestFindExecutable:
    """Test locating the gpg binary."""

    def test_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test the environment override is used when it exists."""
        binary = tmp_path / "gpg"
        binary.write_text("")
        monkeypatch.setenv(EXECUTABLE_ENV_VAR, str(binary))
        assert find_gpg_executable() == binary

    def test_override_missing(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test a missing override is not silently replaced."""
        monkeypatch.setenv(EXECUTABLE_ENV_VAR, str(tmp_path / "missing"))
        assert find_gpg_executable() is None

    def test_search_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test gpg is preferred over gpg2."""
        monkeypatch.delenv(EXECUTABLE_ENV_VAR, raising=False)
        with patch("gpg_bridge.config.shutil.which", side_effect=lambda name: f"/opt/{name}"):
            assert find_gpg_executable() == Path("/opt/gpg")

    def test_not_found(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test None when nothing is installed."""
        monkeypatch.delenv(EXECUTABLE_ENV_VAR, raising=False)
        with patch("gpg_bridge.config.shutil.which", return_value=None):
            assert find_gpg_executable() is None


class TestGPGConfig:
    """Test the per-invocation settings."""

    def test_build_env(self, tmp_path: Path) -> None:
        """Test GNUPGHOME, English messages and extra variables."""
        config = GPGConfig(executable=Path("/usr/bin/gpg"), gnupghome=tmp_path, extra_env={"X": "1"})
        env = config.build_env()
        assert env["GNUPGHOME"] == str(tmp_path)
        assert env["LANGUAGE"] == "en"
        assert env["LC_MESSAGES"] == "C"
        assert env["X"] == "1"

    def test_base_args(self, tmp_path: Path) -> None:
        """Test the arguments placed before every command."""
        config = GPGConfig(executable=Path("/usr/bin/gpg"), gnupghome=tmp_path)
        args = config.base_args()
        assert args[:4] == ["--no-tty", "--no-options", "--display-charset", "utf-8"]
        assert ["--homedir", str(tmp_path)] == args[4:6]
        assert args[-2:] == ["--pinentry-mode", "loopback"]

    def test_base_args_without_loopback(self) -> None:
        """Test loopback pinentry can be disabled."""
        config = GPGConfig(executable=Path("/usr/bin/gpg"), loopback_pinentry=False)
        assert "--pinentry-mode" not in config.base_args()
        assert "--homedir" not in config.base_args()

    def test_executable_is_located(self) -> None:
        """Test a missing executable is looked up."""
        with patch("gpg_bridge.config.find_gpg_executable", return_value=Path("/found/gpg")):
            assert GPGConfig().executable == Path("/found/gpg")


class TestCapabilities:
    """Test parsing gpg --version."""

    def test_parse_version_output(self) -> None:
        """Test version and algorithm lists, including wrapped lines."""
        capabilities = parse_version_output(VERSION_OUTPUT)
        assert capabilities.version == "2.4.4"
        assert capabilities.key_types == ["RSA", "ELG", "DSA", "ECDH", "ECDSA", "EDDSA"]
        assert "AES256" in capabilities.ciphers
        assert "CAMELLIA256" in capabilities.ciphers
        assert len(capabilities.ciphers) == 11
        assert "SHA512" in capabilities.hashes
        assert capabilities.compressions == ["Uncompressed", "ZIP", "ZLIB", "BZIP2"]

    def test_home_line_is_not_an_algorithm(self) -> None:
        """Test unrelated "Name: value" lines are ignored."""
        capabilities = parse_version_output(VERSION_OUTPUT)
        assert "/home/alice/.gnupg" not in capabilities.key_types + capabilities.hashes

    def test_detect_with_fake_gpg(self, fake_config: Callable[..., GPGConfig]) -> None:
        """Test detection runs gpg --version."""
        result = detect_capabilities(fake_config())
        assert result.is_ok()
        capabilities = result.unwrap()
        assert capabilities.version == "2.4.4"
        assert "AES256" in capabilities.ciphers

    def test_detect_without_executable(self) -> None:
        """Test a config with no executable."""
        config = GPGConfig(executable=Path("/usr/bin/gpg"))
        config.executable = None
        result = detect_capabilities(config)
        assert result.is_err()
        assert isinstance(result.unwrap_err(), ConfigError)

    def test_detect_timeout(self) -> None:
        """Test a hanging gpg is reported."""
        config = GPGConfig(executable=Path("/usr/bin/gpg"))
        with patch(
            "gpg_bridge.config.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="gpg", timeout=10),
        ):
            result = detect_capabilities(config)
        assert result.is_err()
        assert "timed out" in str(result.unwrap_err())

    def test_detect_failure(self) -> None:
        """Test a non-zero exit code."""
        config = GPGConfig(executable=Path("/usr/bin/gpg"))
        failed = MagicMock(returncode=2, stdout="", stderr="gpg: broken\n")
        with patch("gpg_bridge.config.subprocess.run", return_value=failed):
            result = detect_capabilities(config)
        assert result.is_err()
        assert "gpg: broken" in str(result.unwrap_err())

    @pytest.mark.skipif(os.name != "posix", reason="needs a POSIX shell")
    def test_detect_unrunnable(self, tmp_path: Path) -> None:
        """Test an executable that cannot be started."""
        config = GPGConfig(executable=tmp_path / "missing-gpg")
        result = detect_capabilities(config)
        assert result.is_err()
        assert "Could not run gpg" in str(result.unwrap_err())
