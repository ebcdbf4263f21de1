"""
Root filesystem operations — symlinks and chroot commands via their chains.
"""

from __future__ import annotations

from pathlib import Path

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.errors import PrivilegeError
from onerecovery.core.models.environment import EnvironmentProfile
from onerecovery.core.models.strategy import Operation, StrategyResult
from onerecovery.core.strategies.base import ChrootRequest, SymlinkRequest
from onerecovery.core.strategies.runner import try_strategies
from onerecovery.core.strategies.selector import resolve


class RootfsOperations:
    """Privileged operations on the Alpine root filesystem."""

    def __init__(self, runner: CommandRunner, profile: EnvironmentProfile) -> None:
        self.runner = runner
        self.profile = profile

    def symlink(self, target: str, link: Path) -> StrategyResult:
        return try_strategies(
            resolve(Operation.SYMLINK, self.profile, runner=self.runner),
            SymlinkRequest(target=target, link=link),
            error_cls=PrivilegeError,
            what=f"Symlink {link.name} -> {target}",
        )

    def chroot(
        self,
        root: Path,
        command: list[str],
        *,
        critical: bool = True,
        env: dict[str, str] | None = None,
    ) -> StrategyResult:
        return try_strategies(
            resolve(Operation.CHROOT, self.profile, runner=self.runner),
            ChrootRequest(root=root, command=command, critical=critical, env=env or {}),
            error_cls=PrivilegeError,
            what=f"chroot {' '.join(command)}",
            remediation="Re-run as root, with sudo available, or in a privileged container.",
        )
