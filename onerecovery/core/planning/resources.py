"""
Resource planner — size build parallelism to the memory we have.

One compilation thread per 2 GiB of available memory, clamped to
``[1, cores]``. Compiler flags degrade as memory shrinks. When memory is
short and swap is allowed, a temporary swap file is created for the
duration of a build step and always removed afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.detection.hardware import core_count, read_meminfo
from onerecovery.core.models.environment import EnvironmentProfile
from onerecovery.core.models.resources import MemoryInfo, ResourcePlan

logger = logging.getLogger(__name__)

_GIB_KB = 1024 * 1024

KB_PER_THREAD = 2 * _GIB_KB
LOW_MEMORY_KB = 4 * _GIB_KB
MEDIUM_MEMORY_KB = 8 * _GIB_KB

FLAGS_LOW = "-g0 -Os -fno-inline"
FLAGS_MEDIUM = "-g0 -Os"
FLAGS_STANDARD = "-O2"

SWAP_FILE = Path("/tmp/onerecovery_swap")
SWAP_SIZE_MB = 4096


def threads_for(available_kb: int, cores: int, jobs: int | None = None) -> int:
    """Thread count for a given amount of available memory.

    ``jobs`` is a user-supplied upper bound; it can lower the count but
    never raise it above what memory and cores allow.
    """
    cores = max(1, cores)
    threads = max(1, min(available_kb // KB_PER_THREAD, cores))
    if jobs is not None:
        threads = max(1, min(threads, jobs))
    return threads


def compiler_flags_for(available_kb: int) -> str:
    if available_kb < LOW_MEMORY_KB:
        return FLAGS_LOW
    if available_kb < MEDIUM_MEMORY_KB:
        return FLAGS_MEDIUM
    return FLAGS_STANDARD


class ResourcePlanner:
    """Produce ``ResourcePlan``s and manage the temporary swap file.

    Args:
        runner: Command runner used for the swap commands.
        use_swap: Whether a swap file may be created on low memory.
        jobs: Optional upper bound on the thread count.
        meminfo: Memory probe (injectable for tests).
        cores: Core-count probe (injectable for tests).
        swap_file: Location of the temporary swap file.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        use_swap: bool = False,
        jobs: int | None = None,
        meminfo: Callable[[], MemoryInfo] = read_meminfo,
        cores: Callable[[], int] = core_count,
        swap_file: Path = SWAP_FILE,
        swap_size_mb: int = SWAP_SIZE_MB,
    ) -> None:
        self.runner = runner
        self.use_swap = use_swap
        self.jobs = jobs
        self._meminfo = meminfo
        self._cores = cores
        self.swap_file = swap_file
        self.swap_size_mb = swap_size_mb
        self._swap_active = False

    @property
    def swap_active(self) -> bool:
        return self._swap_active

    def plan(self, profile: EnvironmentProfile | None = None) -> ResourcePlan:
        """Measure memory now and derive a plan."""
        available = self._meminfo().effective_available_kb
        cores = self._cores()
        wants_swap = (
            self.use_swap
            and not self._swap_active
            and available < LOW_MEMORY_KB
            and (profile is None or profile.can_elevate)
        )
        plan = ResourcePlan(
            thread_count=threads_for(available, cores, self.jobs),
            compiler_flags=compiler_flags_for(available),
            use_swap=wants_swap,
            swap_size_mb=self.swap_size_mb if wants_swap else 0,
            available_kb=available,
            core_count=cores,
        )
        logger.info(
            "Resource plan: %d thread(s), CFLAGS '%s', %.1f GiB available, swap=%s",
            plan.thread_count,
            plan.compiler_flags,
            available / _GIB_KB,
            plan.use_swap,
        )
        return plan

    @contextmanager
    def provisioned(self, profile: EnvironmentProfile) -> Iterator[ResourcePlan]:
        """Yield a plan, with temporary swap while the block runs.

        The swap file is torn down on exit whether the block succeeds,
        raises, or is interrupted.
        """
        plan = self.plan(profile)
        created = False
        try:
            if plan.use_swap:
                created = self.create_swap()
                if created:
                    plan = self.plan(profile)
            yield plan
        finally:
            if created:
                self.remove_swap()

    # ── Swap file ───────────────────────────────────────────────

    def create_swap(self) -> bool:
        """Create and enable the swap file. Returns False on failure."""
        if self.swap_file.exists():
            self.remove_swap()

        logger.info("Creating %d MB swap file at %s", self.swap_size_mb, self.swap_file)
        steps = (
            ["dd", "if=/dev/zero", f"of={self.swap_file}", "bs=1M", f"count={self.swap_size_mb}"],
            ["chmod", "600", str(self.swap_file)],
            ["mkswap", str(self.swap_file)],
            ["swapon", str(self.swap_file)],
        )
        for cmd in steps:
            result = self.runner.run(cmd, sudo=True)
            if not result.ok:
                logger.warning("Swap setup failed at '%s': %s", cmd[0], result.describe())
                self._swap_active = True
                self.remove_swap()
                return False

        self._swap_active = True
        return True

    def remove_swap(self) -> None:
        """Disable and delete the swap file, ignoring partial state."""
        path = str(self.swap_file)
        if self._swap_active or self.swap_file.exists():
            off = self.runner.run(["swapoff", path], sudo=True)
            if not off.ok:
                logger.debug("swapoff %s: %s", path, off.describe())
            rm = self.runner.run(["rm", "-f", path], sudo=True)
            if not rm.ok:
                logger.warning("Could not remove swap file %s: %s", path, rm.describe())
            else:
                logger.info("Swap file removed")
        self._swap_active = False

    def remove_stale_swap(self) -> bool:
        """Remove a swap file left behind by an interrupted run."""
        if not self.swap_file.exists():
            return False
        logger.info("Removing stale swap file %s", self.swap_file)
        self.remove_swap()
        return True
