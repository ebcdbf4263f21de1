"""
Strategy selector — ordered candidate strategies per operation and environment.

Chains are plain tables keyed by ``EnvironmentKind``. Every table must
cover every kind (checked at import) and every chain ends with a
placeholder-fallback strategy that needs no tools and no privileges.
Reordering or adding a strategy is a table edit.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.models.environment import EnvironmentKind, EnvironmentProfile
from onerecovery.core.models.strategy import Operation, StrategyKind
from onerecovery.core.strategies.base import Strategy
from onerecovery.core.strategies.chroot import DirectChroot, SudoChroot, UnavailableChroot
from onerecovery.core.strategies.extraction import (
    CachedExtract,
    ParallelExtract,
    PythonTarExtract,
    SudoTarExtract,
    TarExtract,
)
from onerecovery.core.strategies.symlink import DirectSymlink, PlaceholderSymlink, SudoSymlink

if TYPE_CHECKING:
    from onerecovery.core.cache.manager import CacheManager

_CONTAINER_EXTRACT = ("parallel", "tar", "extract-cache", "sudo-tar", "python-tarfile")

CHAINS: dict[Operation, dict[EnvironmentKind, tuple[str, ...]]] = {
    Operation.EXTRACT: {
        EnvironmentKind.BARE: ("tar", "sudo-tar-on-permission", "python-tarfile"),
        EnvironmentKind.DOCKER: _CONTAINER_EXTRACT,
        EnvironmentKind.CI: _CONTAINER_EXTRACT,
    },
    Operation.SYMLINK: {
        EnvironmentKind.BARE: ("direct", "sudo-ln", "placeholder"),
        EnvironmentKind.DOCKER: ("direct", "sudo-ln", "placeholder"),
        EnvironmentKind.CI: ("direct", "sudo-ln", "placeholder"),
    },
    Operation.CHROOT: {
        EnvironmentKind.BARE: ("direct-chroot", "sudo-chroot", "chroot-unavailable"),
        EnvironmentKind.DOCKER: ("direct-chroot", "sudo-chroot", "chroot-unavailable"),
        EnvironmentKind.CI: ("direct-chroot", "sudo-chroot", "chroot-unavailable"),
    },
}


class _Deps:
    def __init__(
        self,
        runner: CommandRunner,
        profile: EnvironmentProfile,
        cache: CacheManager | None,
    ) -> None:
        self.runner = runner
        self.profile = profile
        self.cache = cache


_FACTORIES: dict[str, Callable[[_Deps], Strategy]] = {
    "parallel": lambda d: ParallelExtract(d.runner),
    "tar": lambda d: TarExtract(d.runner),
    "extract-cache": lambda d: CachedExtract(d.cache),
    "sudo-tar": lambda d: SudoTarExtract(d.runner, d.profile),
    "sudo-tar-on-permission": lambda d: SudoTarExtract(
        d.runner, d.profile, only_after_permission_error=True,
    ),
    "python-tarfile": lambda d: PythonTarExtract(),
    "direct": lambda d: DirectSymlink(),
    "sudo-ln": lambda d: SudoSymlink(d.runner, d.profile),
    "placeholder": lambda d: PlaceholderSymlink(),
    "direct-chroot": lambda d: DirectChroot(d.runner, d.profile),
    "sudo-chroot": lambda d: SudoChroot(d.runner, d.profile),
    "chroot-unavailable": lambda d: UnavailableChroot(),
}


def resolve(
    operation: Operation,
    profile: EnvironmentProfile,
    *,
    runner: CommandRunner,
    cache: CacheManager | None = None,
) -> list[Strategy]:
    """Ordered strategies to try for ``operation`` on this host."""
    deps = _Deps(runner, profile, cache)
    names = CHAINS[operation][profile.kind]
    strategies = [_FACTORIES[name](deps) for name in names]

    if not strategies or strategies[-1].kind is not StrategyKind.PLACEHOLDER_FALLBACK:
        raise RuntimeError(f"{operation.value} chain for {profile.kind.value} has no final fallback")
    return strategies


def _check_tables() -> None:
    for operation, table in CHAINS.items():
        missing = set(EnvironmentKind) - set(table)
        if missing:
            names = ", ".join(sorted(k.value for k in missing))
            raise RuntimeError(f"{operation.value} chain table misses: {names}")
        for names in table.values():
            unknown = [n for n in names if n not in _FACTORIES]
            if unknown:
                raise RuntimeError(f"Unknown strategies in {operation.value} chain: {unknown}")


_check_tables()
