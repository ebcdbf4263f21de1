"""
Host preparation — make sure the build host has the toolchain.

Detects the package manager, checks for the tools the later steps call
and installs what is missing (elevated when not root). Also warns when
memory or disk look too small for a kernel build.
"""

from __future__ import annotations

import logging
from pathlib import Path

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.detection.hardware import free_disk_gb, read_meminfo
from onerecovery.core.errors import PrivilegeError
from onerecovery.core.models.environment import EnvironmentProfile

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("make", "gcc", "tar", "xz", "flex", "bison", "bc", "perl", "depmod")

MIN_MEMORY_KB = 2 * 1024 * 1024
MIN_DISK_GB = 10.0

# (manager binary, install command prefix, packages)
_MANAGERS: tuple[tuple[str, list[str], list[str]], ...] = (
    ("apt-get", ["apt-get", "install", "-y"],
     ["wget", "tar", "xz-utils", "build-essential", "flex", "bison", "libssl-dev", "bc",
      "kmod", "libelf-dev", "autoconf", "automake", "libtool", "perl"]),
    ("dnf", ["dnf", "install", "-y"],
     ["wget", "tar", "xz", "gcc", "make", "flex", "bison", "openssl-devel", "bc", "kmod",
      "elfutils-libelf-devel", "autoconf", "automake", "libtool", "perl"]),
    ("yum", ["yum", "install", "-y"],
     ["wget", "tar", "xz", "gcc", "make", "flex", "bison", "openssl-devel", "bc", "kmod",
      "elfutils-libelf-devel", "autoconf", "automake", "libtool", "perl"]),
    ("pacman", ["pacman", "-Sy", "--noconfirm", "--needed"],
     ["wget", "tar", "xz", "base-devel", "flex", "bison", "openssl", "bc", "kmod", "libelf", "perl"]),
    ("zypper", ["zypper", "--non-interactive", "install"],
     ["wget", "tar", "xz", "gcc", "make", "flex", "bison", "libopenssl-devel", "bc", "kmod",
      "libelf-devel", "autoconf", "automake", "libtool", "perl"]),
    ("apk", ["apk", "add"],
     ["wget", "tar", "xz", "build-base", "flex", "bison", "openssl-dev", "bc", "kmod",
      "elfutils-dev", "autoconf", "automake", "libtool", "perl"]),
)


def missing_tools(runner: CommandRunner, tools: tuple[str, ...] = REQUIRED_TOOLS) -> list[str]:
    return [tool for tool in tools if not runner.has(tool)]


def detect_package_manager(runner: CommandRunner) -> str | None:
    for name, _cmd, _pkgs in _MANAGERS:
        if runner.has(name):
            return name
    return None


def check_resources(workdir: Path) -> list[str]:
    """Human-readable warnings about memory and disk."""
    warnings: list[str] = []
    mem = read_meminfo().effective_available_kb
    if 0 < mem < MIN_MEMORY_KB:
        warnings.append(
            f"Only {mem / 1024 / 1024:.1f} GiB of memory available; consider --use-swap"
        )
    disk = free_disk_gb(workdir)
    if disk is not None and disk < MIN_DISK_GB:
        warnings.append(f"Only {disk:.1f} GB free in {workdir}; a build needs about {MIN_DISK_GB:.0f} GB")
    for warning in warnings:
        logger.warning(warning)
    return warnings


def install_build_dependencies(runner: CommandRunner, profile: EnvironmentProfile) -> list[str]:
    """Install the toolchain if any required tool is missing.

    Returns the list of tools that were missing before installation.

    Raises:
        PrivilegeError: tools are missing and nothing can install them.
    """
    missing = missing_tools(runner)
    if not missing:
        logger.info("All build tools present")
        return []

    logger.info("Missing build tools: %s", ", ".join(missing))
    manager = detect_package_manager(runner)
    if manager is None:
        raise PrivilegeError(
            f"Missing build tools ({', '.join(missing)}) and no supported package manager found",
            remediation="Install them manually, then re-run with --skip-prepare.",
        )
    if not profile.can_elevate:
        raise PrivilegeError(
            f"Missing build tools ({', '.join(missing)}) and no root or sudo to install them",
            remediation="Install them manually, then re-run with --skip-prepare.",
        )

    _name, install, packages = next(m for m in _MANAGERS if m[0] == manager)
    if manager == "apt-get":
        runner.check(["apt-get", "update"], sudo=True, what="apt-get update")
    runner.check(
        install + packages,
        sudo=True,
        stream=True,
        what=f"{manager} install",
        remediation="Check the package manager output above, then re-run the prepare step.",
    )

    still_missing = missing_tools(runner, tuple(missing))
    if still_missing:
        logger.warning("Still missing after install: %s", ", ".join(still_missing))
    return missing
