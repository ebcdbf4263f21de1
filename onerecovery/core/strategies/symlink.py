"""
Symlink strategies — create links inside the root filesystem.

    direct        os.symlink, replacing an existing entry   (direct)
    sudo-ln       ln -sfn with elevation                    (sudo-elevated)
    placeholder   text file holding the link target         (placeholder-fallback)

The placeholder is only acceptable because the links we create are
init-system conveniences; a warning is logged whenever it is used.
"""

from __future__ import annotations

import logging
import os

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.models.environment import EnvironmentProfile
from onerecovery.core.models.strategy import Operation, StrategyKind, StrategyResult
from onerecovery.core.strategies.base import Strategy, SymlinkRequest

logger = logging.getLogger(__name__)


class DirectSymlink(Strategy):
    kind = StrategyKind.DIRECT
    operation = Operation.SYMLINK

    @property
    def name(self) -> str:
        return "direct"

    def execute(self, request: SymlinkRequest) -> StrategyResult:
        link = request.link
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink() or link.exists():
                if link.is_symlink() and os.readlink(link) == request.target:
                    return StrategyResult.success(self.name, output="already linked")
                link.unlink()
            os.symlink(request.target, link)
        except OSError as e:
            return StrategyResult.failure(
                self.name, str(e), permission_denied=isinstance(e, PermissionError),
            )
        return StrategyResult.success(self.name, output=f"{link} -> {request.target}")


class SudoSymlink(Strategy):
    kind = StrategyKind.SUDO_ELEVATED
    operation = Operation.SYMLINK

    def __init__(self, runner: CommandRunner, profile: EnvironmentProfile) -> None:
        self.runner = runner
        self.profile = profile

    @property
    def name(self) -> str:
        return "sudo-ln"

    def is_available(self, request: SymlinkRequest) -> bool:
        return self.profile.has_sudo and not self.profile.is_root

    def execute(self, request: SymlinkRequest) -> StrategyResult:
        mkdir = self.runner.run(["mkdir", "-p", str(request.link.parent)], sudo=True)
        if not mkdir.ok:
            return StrategyResult.failure(self.name, mkdir.describe())
        result = self.runner.run(["ln", "-sfn", request.target, str(request.link)], sudo=True)
        if not result.ok:
            return StrategyResult.failure(
                self.name, result.describe(), permission_denied=result.permission_denied,
            )
        return StrategyResult.success(self.name, output=f"{request.link} -> {request.target}")


class PlaceholderSymlink(Strategy):
    kind = StrategyKind.PLACEHOLDER_FALLBACK
    operation = Operation.SYMLINK

    @property
    def name(self) -> str:
        return "placeholder"

    def execute(self, request: SymlinkRequest) -> StrategyResult:
        try:
            request.link.parent.mkdir(parents=True, exist_ok=True)
            request.link.write_text(f"{request.target}\n", encoding="utf-8")
        except OSError as e:
            return StrategyResult.failure(self.name, str(e))
        logger.warning(
            "Could not create symlink %s -> %s; wrote a placeholder file instead",
            request.link, request.target,
        )
        return StrategyResult.success(self.name, output="placeholder written", metadata={"degraded": True})
