"""
Cache models — one entry per cached source artifact.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class SourceComponent(BaseModel):
    """An upstream archive the pipeline downloads and extracts."""

    model_config = ConfigDict(frozen=True)

    name: str                 # alpine | kernel | zfs
    version: str
    url: str
    arch: str = "x86_64"
    target_dir: str           # directory name under the working dir
    strip_components: int = 0

    @property
    def filename(self) -> str:
        """Cache key: the final path component of the URL."""
        return self.url.rstrip("/").rsplit("/", 1)[-1]


class CacheEntry(BaseModel):
    """A cached artifact and where it lives."""

    model_config = ConfigDict(frozen=True)

    component: str
    version: str
    arch: str
    path: Path
    created_at: str = Field(default_factory=_now_iso)
