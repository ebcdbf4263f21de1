"""
Hardware probes — memory, cores and free disk space.

Read-only: /proc/meminfo, ``os.cpu_count()``, ``shutil.disk_usage``.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from onerecovery.core.models.resources import MemoryInfo

MEMINFO = Path("/proc/meminfo")


def read_meminfo(path: Path = MEMINFO) -> MemoryInfo:
    """Parse MemTotal and MemAvailable (kB) from a meminfo file."""
    total = 0
    available: int | None = None
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                if line.startswith("MemTotal:"):
                    total = int(line.split()[1])
                elif line.startswith("MemAvailable:"):
                    available = int(line.split()[1])
    except (FileNotFoundError, ValueError, IndexError):
        pass
    return MemoryInfo(total_kb=total, available_kb=available)


def core_count() -> int:
    """Logical CPUs usable by this process (at least 1)."""
    try:
        return max(1, len(os.sched_getaffinity(0)))
    except (AttributeError, OSError):
        return max(1, os.cpu_count() or 1)


def free_disk_gb(path: Path) -> float | None:
    """Free space in GB on the filesystem holding ``path``."""
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    try:
        return shutil.disk_usage(probe).free / (1024**3)
    except OSError:
        return None
