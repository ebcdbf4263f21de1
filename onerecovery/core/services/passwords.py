"""
Root password handling for the image.

Passwords are generated with ``secrets``, hashed to SHA-512 crypt by an
external tool (``openssl passwd -6``, falling back to ``mkpasswd``) and
written into the rootfs shadow file. The plaintext only ever goes to the
tool's stdin and, for generated passwords, to a mode-600 file for the
user.
"""

from __future__ import annotations

import logging
import os
import secrets
import string
from pathlib import Path

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.errors import ConfigurationError
from onerecovery.core.models.config import PasswordPolicy

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "_!@#$%^&*()"
PASSWORD_FILE = "onerecovery-password.txt"


def generate_password(length: int = 12) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str, runner: CommandRunner) -> str:
    """SHA-512 crypt hash of ``password``.

    Raises:
        ConfigurationError: no hashing tool is installed or hashing failed.
    """
    candidates = (
        ["openssl", "passwd", "-6", "-stdin"],
        ["mkpasswd", "-m", "sha-512", "-s"],
    )
    for cmd in candidates:
        if not runner.has(cmd[0]):
            continue
        result = runner.run(cmd, input_text=password + "\n")
        hashed = result.stdout.strip()
        if result.ok and hashed.startswith("$6$"):
            return hashed
        logger.warning("%s could not hash the password: %s", cmd[0], result.describe())

    raise ConfigurationError(
        "Cannot hash the root password: neither openssl nor mkpasswd is usable",
        remediation="Install openssl, or build with --no-password.",
    )


def set_root_password(shadow: Path, hashed: str) -> None:
    """Replace root's password field in a shadow file (creating the entry if needed)."""
    lines = shadow.read_text(encoding="utf-8").splitlines() if shadow.is_file() else []
    replaced = False
    for i, line in enumerate(lines):
        if line.startswith("root:"):
            fields = line.split(":")
            fields[1] = hashed
            lines[i] = ":".join(fields)
            replaced = True
            break
    if not replaced:
        lines.insert(0, f"root:{hashed}:0:0:99999:7:::")
    shadow.parent.mkdir(parents=True, exist_ok=True)
    shadow.write_text("\n".join(lines) + "\n", encoding="utf-8")
    shadow.chmod(0o640)


def write_password_file(path: Path, password: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write("OneRecovery root password\n")
        f.write(f"Username: root\nPassword: {password}\n")
    path.chmod(0o600)


def apply_password_policy(
    policy: PasswordPolicy,
    shadow: Path,
    password_file: Path,
    runner: CommandRunner,
) -> str | None:
    """Set the image's root password. Returns the plaintext if one was generated."""
    if policy.mode == "none":
        set_root_password(shadow, "")
        logger.warning("Root password is empty (--no-password)")
        return None

    if policy.mode == "custom":
        if not policy.password:
            raise ConfigurationError("--password was given an empty value")
        set_root_password(shadow, hash_password(policy.password, runner))
        logger.info("Root password set from --password")
        return None

    password = generate_password(policy.length)
    set_root_password(shadow, hash_password(password, runner))
    write_password_file(password_file, password)
    logger.info("Generated root password written to %s", password_file)
    return password
