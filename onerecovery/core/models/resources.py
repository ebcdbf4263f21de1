"""
Resource models — memory snapshot and the derived execution plan.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class MemoryInfo(BaseModel):
    """Parsed /proc/meminfo counters, in kB."""

    model_config = ConfigDict(frozen=True)

    total_kb: int = 0
    available_kb: int | None = None     # None on kernels without MemAvailable

    @property
    def effective_available_kb(self) -> int:
        """MemAvailable, or 70% of MemTotal when the kernel lacks it."""
        if self.available_kb is not None:
            return self.available_kb
        return self.total_kb * 7 // 10


class ResourcePlan(BaseModel):
    """How hard a build step may push the machine."""

    model_config = ConfigDict(frozen=True)

    thread_count: int = Field(default=1, ge=1)
    compiler_flags: str = "-O2"
    use_swap: bool = False
    swap_size_mb: int = 0
    available_kb: int = 0
    core_count: int = Field(default=1, ge=1)

    def to_dict(self) -> dict[str, object]:
        return self.model_dump()
