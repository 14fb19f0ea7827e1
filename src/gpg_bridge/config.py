from __future__ import annotations

import os
import platform
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from .types import Result

EXECUTABLE_ENV_VAR = "GPG_BRIDGE_EXECUTABLE"


class ConfigError(Exception):
    pass


# gpg-agent settings needed to answer passphrase prompts over the command channel
LOOPBACK_GPG_AGENT_CONF = """\
# Let gpg ask for passphrases through --command-fd
allow-loopback-pinentry

# Cache TTL (in seconds)
default-cache-ttl 600
max-cache-ttl 7200
"""


def get_gnupghome() -> Path:
    """Get the GnuPG home directory."""
    env_home = os.environ.get("GNUPGHOME")
    if env_home:
        return Path(env_home)
    return Path.home() / ".gnupg"


def ensure_gnupg_dir(gnupghome: Path | None = None) -> Result[Path]:
    """Ensure the GnuPG directory exists with correct permissions."""
    home = gnupghome or get_gnupghome()

    try:
        home.mkdir(parents=True, exist_ok=True)

        # Set restrictive permissions (0700)
        if platform.system() != "Windows":
            home.chmod(0o700)

        return Result.ok(home)
    except OSError as e:
        return Result.err(ConfigError(f"Could not create GnuPG directory: {e}"))


def write_gpg_agent_conf(
    gnupghome: Path | None = None,
    content: str | None = None,
    backup_existing: bool = True,
) -> Result[Path]:
    """Write a gpg-agent.conf that allows loopback pinentry."""
    home = gnupghome or get_gnupghome()
    conf_path = home / "gpg-agent.conf"

    try:
        if backup_existing and conf_path.exists():
            backup_path = conf_path.with_suffix(".conf.bak")
            conf_path.rename(backup_path)

        conf_path.write_text(content or LOOPBACK_GPG_AGENT_CONF)

        if platform.system() != "Windows":
            conf_path.chmod(0o600)

        return Result.ok(conf_path)
    except OSError as e:
        return Result.err(ConfigError(f"Could not write gpg-agent.conf: {e}"))


def find_gpg_executable() -> Path | None:
    """Locate gpg, preferring an explicit override in the environment."""
    override = os.environ.get(EXECUTABLE_ENV_VAR)
    if override:
        path = Path(override)
        return path if path.is_file() else None

    for name in ("gpg", "gpg2"):
        found = shutil.which(name)
        if found:
            return Path(found)
    return None


@dataclass
class GPGConfig:
    """Where gpg lives and how it should be started."""

    executable: Path | None = None
    gnupghome: Path | None = None
    extra_env: dict[str, str] = field(default_factory=dict)
    loopback_pinentry: bool = True

    def __post_init__(self) -> None:
        if self.executable is None:
            self.executable = find_gpg_executable()

    def build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        if self.gnupghome:
            env["GNUPGHOME"] = str(self.gnupghome)
        # Keep gpg's messages in English so the stderr heuristics can match them
        env["LANGUAGE"] = "en"
        env["LC_MESSAGES"] = "C"
        env.update(self.extra_env)
        return env

    def base_args(self) -> list[str]:
        """Options placed before every invocation."""
        args = ["--no-tty", "--no-options", "--display-charset", "utf-8"]
        if self.gnupghome:
            args.extend(["--homedir", str(self.gnupghome)])
        if self.loopback_pinentry:
            args.extend(["--pinentry-mode", "loopback"])
        return args


@dataclass
class Capabilities:
    """What the installed gpg reports in ``gpg --version``."""

    version: str
    key_types: list[str] = field(default_factory=list)
    ciphers: list[str] = field(default_factory=list)
    hashes: list[str] = field(default_factory=list)
    compressions: list[str] = field(default_factory=list)


_VERSION_LINE = re.compile(r"^gpg \(GnuPG\)\s+(\S+)")
_ALGORITHM_LINE = re.compile(r"^(\w+):\s*(.+)")


def parse_version_output(output: str) -> Capabilities:
    capabilities = Capabilities(version="")
    section: str | None = None
    for line in output.splitlines():
        match = _VERSION_LINE.match(line)
        if match:
            capabilities.version = match.group(1)
            continue

        match = _ALGORITHM_LINE.match(line)
        if match:
            section = match.group(1).lower()
            values = match.group(2)
        elif section and line.startswith(" "):
            # Long algorithm lists wrap onto indented lines
            values = line
        else:
            section = None
            continue

        names = [name.strip() for name in re.split(r",\s*", values) if name.strip()]
        if section == "pubkey":
            capabilities.key_types.extend(names)
        elif section == "cipher":
            capabilities.ciphers.extend(names)
        elif section == "hash":
            capabilities.hashes.extend(names)
        elif section == "compression":
            capabilities.compressions.extend(names)

    return capabilities


def detect_capabilities(config: GPGConfig | None = None) -> Result[Capabilities]:
    """Run ``gpg --version`` and report the supported algorithms."""
    config = config or GPGConfig()
    if config.executable is None:
        return Result.err(ConfigError("gpg executable not found"))

    try:
        result = subprocess.run(
            [str(config.executable), "--version"],
            capture_output=True,
            text=True,
            env=config.build_env(),
            timeout=10,
        )
    except subprocess.TimeoutExpired:
        return Result.err(ConfigError("gpg --version timed out"))
    except OSError as e:
        return Result.err(ConfigError(f"Could not run gpg: {e}"))

    if result.returncode != 0:
        return Result.err(ConfigError(f"gpg --version failed: {result.stderr.strip()}"))

    return Result.ok(parse_version_output(result.stdout))
