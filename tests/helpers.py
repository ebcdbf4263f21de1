"""
Test helpers — archives, fake tool output and memory probes.
"""

import io
import tarfile
from pathlib import Path

from onerecovery.core.models.resources import MemoryInfo

GIB_KB = 1024 * 1024

HOST_TOOLS = (
    "tar", "pigz", "xz", "chroot", "make", "gcc", "openssl", "ccache", "upx",
    "flex", "bison", "bc", "perl", "depmod",
)


def write_tarball(path: Path, files: dict[str, str], *, mode: str = "w:gz") -> Path:
    """Create a real tar archive holding ``files`` (name → content)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode) as tar:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


def populate(target: Path, files: dict[str, str] | None = None) -> None:
    """Simulate a tool filling ``target``."""
    target.mkdir(parents=True, exist_ok=True)
    for name, content in (files or {"README": "extracted\n"}).items():
        dest = target / name
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(content)


def fixed_memory(gib: float):
    """A meminfo probe reporting ``gib`` GiB available."""
    kb = int(gib * GIB_KB)
    return lambda: MemoryInfo(total_kb=kb, available_kb=kb)
