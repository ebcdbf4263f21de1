"""
Build context — everything a pipeline step needs, built once per run.

Steps never read the environment or construct collaborators themselves.
The CLI builds one ``BuildContext`` from the resolved ``BuildConfig`` and
the classified environment, and every step receives it:

    - layout:    where things live in the working directory
    - config:    the immutable build configuration
    - profile:   the environment classification
    - runner:    the single subprocess seam
    - planner:   resource sizing and the swap guard
    - cache:     source / extracted-tree / compiler caches
    - extractor: archive extraction through the strategy chain
    - ops:       symlink and chroot through their strategy chains
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.cache.manager import CacheManager
from onerecovery.core.config.loader import CONFIG_FILE
from onerecovery.core.models.config import BuildConfig
from onerecovery.core.models.environment import EnvironmentProfile
from onerecovery.core.observability.logging_config import ERROR_LOG_NAME
from onerecovery.core.persistence.checkpoint_store import CHECKPOINT_FILE
from onerecovery.core.planning.resources import ResourcePlanner
from onerecovery.core.services.downloads import KERNEL_DIR, ROOTFS_DIR, ZFS_DIR
from onerecovery.core.services.passwords import PASSWORD_FILE
from onerecovery.core.strategies.extraction import ArchiveExtractor
from onerecovery.core.strategies.operations import RootfsOperations

ARTIFACT_NAME = "OneRecovery.efi"


@dataclass(frozen=True)
class BuildLayout:
    """Paths inside one working directory."""

    workdir: Path

    @property
    def rootfs(self) -> Path:
        return self.workdir / ROOTFS_DIR

    @property
    def kernel(self) -> Path:
        return self.workdir / KERNEL_DIR

    @property
    def zfs(self) -> Path:
        return self.workdir / ZFS_DIR

    @property
    def zfiles(self) -> Path:
        return self.workdir / "zfiles"

    @property
    def kernel_configs(self) -> Path:
        return self.workdir / "kernel-configs"

    @property
    def output(self) -> Path:
        return self.workdir / "output"

    @property
    def artifact(self) -> Path:
        return self.output / ARTIFACT_NAME

    @property
    def checkpoint(self) -> Path:
        return self.workdir / CHECKPOINT_FILE

    @property
    def config_file(self) -> Path:
        return self.workdir / CONFIG_FILE

    @property
    def error_log(self) -> Path:
        return self.workdir / ERROR_LOG_NAME

    @property
    def password_file(self) -> Path:
        return self.workdir / PASSWORD_FILE

    @property
    def packages_marker(self) -> Path:
        return self.rootfs / ".packages_installed"


@dataclass
class BuildContext:
    """Collaborators shared by every step of one run."""

    layout: BuildLayout
    config: BuildConfig
    profile: EnvironmentProfile
    runner: CommandRunner
    planner: ResourcePlanner
    cache: CacheManager
    extractor: ArchiveExtractor
    ops: RootfsOperations
    # Filled in by the fetch step; later steps fall back to the config series.
    alpine_version: str | None = None
    generated_password: str | None = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        workdir: Path,
        config: BuildConfig,
        profile: EnvironmentProfile,
        runner: CommandRunner | None = None,
        *,
        planner: ResourcePlanner | None = None,
    ) -> BuildContext:
        """Wire the default collaborators for ``config`` and ``profile``."""
        runner = runner or CommandRunner(profile)
        cache = CacheManager(config.cache_dir, enabled=config.use_cache, runner=runner)
        return cls(
            layout=BuildLayout(workdir),
            config=config,
            profile=profile,
            runner=runner,
            planner=planner or ResourcePlanner(runner, use_swap=config.use_swap, jobs=config.jobs),
            cache=cache,
            extractor=ArchiveExtractor(runner, profile, cache if config.use_cache else None),
            ops=RootfsOperations(runner, profile),
        )
