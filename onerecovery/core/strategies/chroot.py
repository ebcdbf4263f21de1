"""
Chroot strategies — run a command inside the root filesystem.

    direct-chroot       chroot as root                    (direct)
    sudo-chroot         sudo chroot                       (sudo-elevated)
    chroot-unavailable  explain why nothing can run       (placeholder-fallback)

Mount policy: on a host the pseudo filesystems (/proc, /sys, /dev,
/dev/pts) are bind-mounted for the duration of the command. Inside a
container only /proc is mounted, and a failed mount is tolerated.
"""

from __future__ import annotations

import logging
from pathlib import Path

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.models.environment import EnvironmentProfile
from onerecovery.core.models.strategy import Operation, StrategyKind, StrategyResult
from onerecovery.core.strategies.base import ChrootRequest, Strategy

logger = logging.getLogger(__name__)

# (source, relative mount point, mount arguments)
_HOST_MOUNTS: tuple[tuple[str, str, list[str]], ...] = (
    ("proc", "proc", ["-t", "proc"]),
    ("sysfs", "sys", ["-t", "sysfs"]),
    ("/dev", "dev", ["--bind"]),
    ("/dev/pts", "dev/pts", ["--bind"]),
)
_CONTAINER_MOUNTS = _HOST_MOUNTS[:1]


class _ChrootBase(Strategy):
    operation = Operation.CHROOT
    elevated = False

    def __init__(self, runner: CommandRunner, profile: EnvironmentProfile) -> None:
        self.runner = runner
        self.profile = profile

    def execute(self, request: ChrootRequest) -> StrategyResult:
        mounted = self._mount(request.root)
        try:
            result = self.runner.run(
                ["chroot", str(request.root), *request.command],
                sudo=self.elevated,
                env=request.env or None,
                stream=True,
            )
        finally:
            self._unmount(request.root, mounted)

        if not result.ok:
            return StrategyResult.failure(
                self.name,
                result.describe(),
                permission_denied=result.permission_denied or result.returncode == 126,
                terminal=not (result.permission_denied or result.returncode in (126, 127)),
                metadata={"returncode": result.returncode, "output": result.output[-2000:]},
            )
        return StrategyResult.success(self.name, output=result.output)

    def _mount(self, root: Path) -> list[Path]:
        mounts = _CONTAINER_MOUNTS if self.profile.is_container else _HOST_MOUNTS
        mounted: list[Path] = []
        for source, rel, args in mounts:
            point = root / rel
            self.runner.run(["mkdir", "-p", str(point)], sudo=self.elevated)
            result = self.runner.run(["mount", *args, source, str(point)], sudo=self.elevated)
            if result.ok:
                mounted.append(point)
            elif self.profile.is_container:
                logger.debug("Mount of %s skipped in container: %s", point, result.describe())
            else:
                logger.warning("Could not mount %s: %s", point, result.describe())
        return mounted

    def _unmount(self, root: Path, mounted: list[Path]) -> None:
        for point in reversed(mounted):
            result = self.runner.run(["umount", "-l", str(point)], sudo=self.elevated)
            if not result.ok:
                logger.warning("Could not unmount %s: %s", point, result.describe())


class DirectChroot(_ChrootBase):
    kind = StrategyKind.DIRECT

    @property
    def name(self) -> str:
        return "direct-chroot"

    def is_available(self, request: ChrootRequest) -> bool:
        return self.profile.is_root and self.runner.has("chroot")


class SudoChroot(_ChrootBase):
    kind = StrategyKind.SUDO_ELEVATED
    elevated = True

    @property
    def name(self) -> str:
        return "sudo-chroot"

    def is_available(self, request: ChrootRequest) -> bool:
        return self.profile.has_sudo and not self.profile.is_root and self.runner.has("chroot")


class UnavailableChroot(Strategy):
    """Last resort: nothing can enter the rootfs without privileges.

    Non-critical requests are skipped with a warning; critical ones fail
    with an explanation so the chain ends with an actionable error.
    """

    kind = StrategyKind.PLACEHOLDER_FALLBACK
    operation = Operation.CHROOT

    @property
    def name(self) -> str:
        return "chroot-unavailable"

    def execute(self, request: ChrootRequest) -> StrategyResult:
        if not request.critical:
            logger.warning("Skipping '%s' in %s: chroot needs root or sudo",
                           " ".join(request.command), request.root)
            return StrategyResult.skip(self.name, "chroot requires root or sudo")
        return StrategyResult.failure(
            self.name,
            "chroot requires root or sudo; run as root or inside a privileged container",
            permission_denied=True,
        )
