"""
Root filesystem configuration — services, config files and consoles.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path

from onerecovery.core.errors import ConfigurationError
from onerecovery.core.models.strategy import StrategyResult
from onerecovery.core.strategies.operations import RootfsOperations

logger = logging.getLogger(__name__)

SYSINIT_SERVICES = ("mdev", "devfs", "dmesg", "syslog", "hwdrivers", "networking")

# zfiles entry -> path inside the rootfs
ZFILES: dict[str, str] = {
    "interfaces": "etc/network/interfaces",
    "resolv.conf": "etc/resolv.conf",
    "profile": "etc/profile",
    "shadow": "etc/shadow",
    "init": "init",
}

_GETTY = re.compile(r"/sbin/getty (?!-a root)")


def link_services(rootfs: Path, ops: RootfsOperations) -> list[StrategyResult]:
    """Enable the sysinit services and the getty alias."""
    results: list[StrategyResult] = []
    runlevel = rootfs / "etc" / "runlevels" / "sysinit"
    for service in SYSINIT_SERVICES:
        results.append(ops.symlink(f"/etc/init.d/{service}", runlevel / service))
    results.append(ops.symlink("/sbin/agetty", rootfs / "sbin" / "getty"))

    degraded = [r for r in results if r.metadata.get("degraded")]
    if degraded:
        logger.warning("%d service link(s) are placeholders", len(degraded))
    return results


def install_zfiles(zfiles: Path, rootfs: Path) -> None:
    """Copy the image's configuration files into the rootfs.

    Raises:
        ConfigurationError: any required file is missing.
    """
    missing = [name for name in ZFILES if not (zfiles / name).is_file()]
    if missing:
        raise ConfigurationError(
            f"Required configuration file(s) missing from {zfiles}: {', '.join(missing)}",
            remediation=f"Restore {zfiles} from the repository.",
        )

    for name, rel in ZFILES.items():
        dest = rootfs / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(zfiles / name, dest)
    (rootfs / "init").chmod(0o755)
    logger.info("Copied %d configuration files into the rootfs", len(ZFILES))


def configure_inittab(rootfs: Path) -> bool:
    """Enable the serial console and root auto-login. Returns True if changed."""
    inittab = rootfs / "etc" / "inittab"
    if not inittab.is_file():
        logger.warning("No inittab at %s; console settings not applied", inittab)
        return False

    original = inittab.read_text(encoding="utf-8")
    lines = []
    for line in original.splitlines():
        if line.startswith("#ttyS0"):
            line = line[1:]
        lines.append(_GETTY.sub("/sbin/getty -a root ", line))
    updated = "\n".join(lines) + "\n"

    if updated == original:
        return False
    inittab.write_text(updated, encoding="utf-8")
    logger.info("Console settings configured (serial console, root auto-login)")
    return True
