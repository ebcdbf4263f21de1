"""
Archive extraction — strategies and the idempotent extractor facade.

Chain members, fastest first:

    parallel        pigz | tar, or XZ_OPT=-T0 tar     (container-optimized)
    tar             plain sequential tar              (direct)
    extract-cache   copy of a pre-extracted tree      (container-optimized)
    sudo-tar        elevated tar + chown              (sudo-elevated)
    python-tarfile  pure-Python tarfile               (placeholder-fallback)

``ArchiveExtractor.extract()`` checks the completion marker before any
strategy runs, so re-extraction on resume is a no-op.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from onerecovery.adapters.shell.command import CommandResult, CommandRunner
from onerecovery.core.errors import ExtractionError
from onerecovery.core.models.environment import EnvironmentProfile
from onerecovery.core.models.strategy import Operation, StrategyKind, StrategyResult
from onerecovery.core.strategies.base import ExtractRequest, Strategy
from onerecovery.core.strategies.runner import try_strategies

if TYPE_CHECKING:
    from onerecovery.core.cache.manager import CacheManager

logger = logging.getLogger(__name__)

# Directories of the kernel tree whose shell scripts the build executes
KERNEL_EXEC_DIRS = ("scripts", "tools")


def _strip_args(request: ExtractRequest) -> list[str]:
    if request.strip_components > 0:
        return [f"--strip-components={request.strip_components}"]
    return []


def _is_populated(target: Path) -> bool:
    return target.is_dir() and any(target.iterdir())


def _from_command(name: str, result: CommandResult, target: Path) -> StrategyResult:
    if not result.ok:
        return StrategyResult.failure(
            name,
            result.describe(),
            permission_denied=result.permission_denied,
        )
    if not _is_populated(target):
        return StrategyResult.failure(name, f"{target} is empty after extraction")
    return StrategyResult.success(name, output=result.output)


# ── Strategies ──────────────────────────────────────────────────


class ParallelExtract(Strategy):
    """Multi-threaded decompression: pigz for gzip, xz -T0 for xz."""

    kind = StrategyKind.CONTAINER_OPTIMIZED
    operation = Operation.EXTRACT

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    @property
    def name(self) -> str:
        return "parallel"

    def is_available(self, request: ExtractRequest) -> bool:
        if request.compression == "gz":
            return self.runner.has("pigz") and self.runner.has("tar")
        if request.compression == "xz":
            return self.runner.has("xz") and self.runner.has("tar")
        return False

    def execute(self, request: ExtractRequest) -> StrategyResult:
        target = str(request.target)
        if request.compression == "gz":
            result = self.runner.pipe(
                ["pigz", "-dc", str(request.archive)],
                ["tar", "-x", "-C", target, *_strip_args(request), "--no-same-owner"],
            )
        else:
            result = self.runner.run(
                ["tar", "-xJf", str(request.archive), "-C", target,
                 *_strip_args(request), "--no-same-owner"],
                env={"XZ_OPT": "-T0"},
            )
        return _from_command(self.name, result, request.target)


class TarExtract(Strategy):
    """Plain sequential tar; compression is auto-detected."""

    kind = StrategyKind.DIRECT
    operation = Operation.EXTRACT

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    @property
    def name(self) -> str:
        return "tar"

    def is_available(self, request: ExtractRequest) -> bool:
        return self.runner.has("tar")

    def execute(self, request: ExtractRequest) -> StrategyResult:
        result = self.runner.run(
            ["tar", "-xf", str(request.archive), "-C", str(request.target),
             *_strip_args(request), "--no-same-owner"],
        )
        return _from_command(self.name, result, request.target)


class CachedExtract(Strategy):
    """Copy a previously extracted tree out of the content cache."""

    kind = StrategyKind.CONTAINER_OPTIMIZED
    operation = Operation.EXTRACT

    def __init__(self, cache: CacheManager | None) -> None:
        self.cache = cache

    @property
    def name(self) -> str:
        return "extract-cache"

    def is_available(self, request: ExtractRequest) -> bool:
        return self.cache is not None and self.cache.extracted_copy(request.archive.name) is not None

    def execute(self, request: ExtractRequest) -> StrategyResult:
        assert self.cache is not None
        source = self.cache.extracted_copy(request.archive.name)
        if source is None:
            return StrategyResult.failure(self.name, "cached copy disappeared")
        try:
            shutil.copytree(source, request.target, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as e:
            return StrategyResult.failure(
                self.name, f"copy from {source} failed: {e}",
                permission_denied=isinstance(e, PermissionError),
            )
        if not _is_populated(request.target):
            return StrategyResult.failure(self.name, f"cached copy {source} is empty")
        return StrategyResult.success(self.name, output=f"copied from {source}")


class SudoTarExtract(Strategy):
    """Elevated retry, followed by handing the tree back to the caller."""

    kind = StrategyKind.SUDO_ELEVATED
    operation = Operation.EXTRACT

    def __init__(
        self,
        runner: CommandRunner,
        profile: EnvironmentProfile,
        *,
        only_after_permission_error: bool = False,
    ) -> None:
        self.runner = runner
        self.profile = profile
        self.only_after_permission_error = only_after_permission_error

    @property
    def name(self) -> str:
        return "sudo-tar"

    def is_available(self, request: ExtractRequest) -> bool:
        return self.profile.has_sudo and not self.profile.is_root and self.runner.has("tar")

    def execute(self, request: ExtractRequest) -> StrategyResult:
        env = {"XZ_OPT": "-T0"} if request.compression == "xz" else None
        result = self.runner.run(
            ["tar", "-xf", str(request.archive), "-C", str(request.target), *_strip_args(request)],
            sudo=True,
            env=env,
        )
        outcome = _from_command(self.name, result, request.target)
        if not outcome.ok or request.skip_ownership:
            return outcome

        chown = self.runner.run(
            ["chown", "-R", f"{request.uid}:{request.gid}", str(request.target)],
            sudo=True,
        )
        if not chown.ok:
            logger.warning("Could not hand %s back to uid %d: %s",
                           request.target, request.uid, chown.describe())
        return outcome


class PythonTarExtract(Strategy):
    """Pure-Python extraction. Slow, but needs no tools and no privileges.

    Extracts into a hidden sibling directory first and moves the result
    into place, so a half-written target never looks complete.
    """

    kind = StrategyKind.PLACEHOLDER_FALLBACK
    operation = Operation.EXTRACT

    @property
    def name(self) -> str:
        return "python-tarfile"

    def execute(self, request: ExtractRequest) -> StrategyResult:
        staging = request.target.parent / f".{request.target.name}.partial"
        shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True)
        try:
            with tarfile.open(request.archive, "r:*") as tar:
                members = list(_stripped_members(tar, request.strip_components))
                # Root filesystems carry absolute symlinks (/bin/sh -> /bin/busybox)
                # that the "data" filter refuses; "tar" still blocks escaping paths
                tar.extractall(staging, members=members, filter="tar")
            for child in staging.iterdir():
                dest = request.target / child.name
                if dest.is_dir() and not dest.is_symlink():
                    shutil.rmtree(dest)
                elif dest.exists() or dest.is_symlink():
                    dest.unlink()
                shutil.move(str(child), str(dest))
        except (tarfile.TarError, OSError, shutil.Error) as e:
            return StrategyResult.failure(
                self.name,
                f"{type(e).__name__}: {e}",
                permission_denied=isinstance(e, PermissionError),
            )
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        if not _is_populated(request.target):
            return StrategyResult.failure(self.name, f"{request.target} is empty after extraction")
        return StrategyResult.success(self.name, output=f"{len(members)} members")


def _stripped_members(tar: tarfile.TarFile, strip: int):
    """Yield members with ``strip`` leading path components removed."""
    for member in tar.getmembers():
        parts = Path(member.name).parts
        if len(parts) <= strip:
            continue
        member.name = str(Path(*parts[strip:]))
        if member.islnk() and strip:
            link_parts = Path(member.linkname).parts
            if len(link_parts) <= strip:
                continue
            member.linkname = str(Path(*link_parts[strip:]))
        yield member


# ── Post-processing ─────────────────────────────────────────────


def restore_exec_bits(tree: Path, exec_dirs: tuple[str, ...] = KERNEL_EXEC_DIRS) -> int:
    """Make the top-level Makefile and build-tool scripts executable.

    Returns the number of files touched.
    """
    touched = 0
    candidates: list[Path] = []
    if (tree / "Makefile").is_file():
        candidates.append(tree / "Makefile")
    for name in exec_dirs:
        sub = tree / name
        if sub.is_dir():
            candidates.extend(p for p in sub.rglob("*.sh") if p.is_file() and not p.is_symlink())

    for path in candidates:
        mode = path.stat().st_mode
        wanted = mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
        if mode != wanted:
            path.chmod(wanted)
            touched += 1
    return touched


def _make_scripts_executable(tree: Path) -> None:
    for path in tree.rglob("*.sh"):
        if path.is_file() and not path.is_symlink():
            mode = path.stat().st_mode
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


# ── Facade ──────────────────────────────────────────────────────


class ArchiveExtractor:
    """Extract archives through the environment's strategy chain.

    Args:
        runner: Command runner shared by the command-line strategies.
        profile: Environment profile selecting the chain.
        cache: Optional cache manager for pre-extracted copies.
    """

    def __init__(
        self,
        runner: CommandRunner,
        profile: EnvironmentProfile,
        cache: CacheManager | None = None,
    ) -> None:
        self.runner = runner
        self.profile = profile
        self.cache = cache

    def extract(
        self,
        archive: Path,
        target: Path,
        *,
        strip_components: int = 0,
        kernel: bool = False,
    ) -> StrategyResult:
        """Extract ``archive`` into ``target`` exactly once.

        Args:
            kernel: The kernel source tree: skip ownership normalization and
                only restore the executable bits the build needs.

        Raises:
            ExtractionError: when every strategy failed.
        """
        from onerecovery.core.strategies.selector import resolve

        request = ExtractRequest(
            archive=archive,
            target=target,
            strip_components=strip_components,
            skip_ownership=kernel,
            uid=self.profile.uid,
            gid=self.profile.gid,
        )
        if request.marker.exists():
            logger.info("%s already extracted (marker %s), skipping", archive.name, request.marker.name)
            return StrategyResult.skip("marker", "already extracted")

        if not archive.is_file():
            raise ExtractionError(
                f"Archive not found: {archive}",
                remediation="Run the fetch step again to download it.",
            )

        target.mkdir(parents=True, exist_ok=True)
        strategies = resolve(
            Operation.EXTRACT, self.profile, runner=self.runner, cache=self.cache,
        )
        result = try_strategies(
            strategies,
            request,
            error_cls=ExtractionError,
            what=f"Extraction of {archive.name}",
            remediation=f"Delete {archive} and re-run the fetch step, or install tar/pigz.",
        )

        if kernel:
            touched = restore_exec_bits(target)
            logger.info("Kernel tree: restored executable bit on %d file(s)", touched)
        elif self.profile.is_container:
            self._normalize_ownership(request)

        if self.cache is not None and not kernel and result.strategy != "extract-cache":
            self.cache.store_extracted(archive.name, target)

        self._mark_complete(request, result.strategy)
        return result

    def is_extracted(self, target: Path) -> bool:
        return ExtractRequest(archive=Path("-"), target=target).marker.exists()

    def clear_marker(self, target: Path) -> None:
        ExtractRequest(archive=Path("-"), target=target).marker.unlink(missing_ok=True)

    def _normalize_ownership(self, request: ExtractRequest) -> None:
        _make_scripts_executable(request.target)
        if request.uid < 0 or os.stat(request.target).st_uid == request.uid:
            return
        chown = self.runner.run(
            ["chown", "-R", f"{request.uid}:{request.gid}", str(request.target)],
        )
        if not chown.ok:
            logger.warning("Ownership normalization of %s failed: %s",
                           request.target, chown.describe())

    @staticmethod
    def _mark_complete(request: ExtractRequest, strategy: str) -> None:
        stamp = datetime.now(UTC).isoformat()
        request.marker.write_text(
            f"archive={request.archive.name}\nstrategy={strategy}\ncompleted_at={stamp}\n",
            encoding="utf-8",
        )
