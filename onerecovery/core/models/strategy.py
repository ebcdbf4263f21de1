"""
Strategy models — the contract between the selector and strategies.

Strategies perform risky operations (extraction, symlinks, chroot) and
return a ``StrategyResult``. They never raise: failures are captured in
the result so the fallback chain can move on to the next candidate.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Operation(str, Enum):
    EXTRACT = "extract"
    SYMLINK = "symlink"
    CHROOT = "chroot-op"


class StrategyKind(str, Enum):
    DIRECT = "direct"
    SUDO_ELEVATED = "sudo-elevated"
    CONTAINER_OPTIMIZED = "container-optimized"
    PLACEHOLDER_FALLBACK = "placeholder-fallback"


class StrategyResult(BaseModel):
    """Outcome of one strategy attempt."""

    strategy: str
    status: Literal["ok", "skipped", "failed"] = "ok"
    output: str = ""
    error: str | None = None
    permission_denied: bool = False     # lets the chain decide on elevation
    terminal: bool = False              # the work itself failed; other strategies would too
    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the attempt succeeded."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        """Whether the attempt failed."""
        return self.status == "failed"

    @classmethod
    def success(cls, strategy: str, output: str = "", **kwargs: Any) -> StrategyResult:
        """Create a success result."""
        return cls(strategy=strategy, status="ok", output=output, **kwargs)

    @classmethod
    def failure(cls, strategy: str, error: str, **kwargs: Any) -> StrategyResult:
        """Create a failure result."""
        return cls(strategy=strategy, status="failed", error=error, **kwargs)

    @classmethod
    def skip(cls, strategy: str, reason: str = "", **kwargs: Any) -> StrategyResult:
        """Create a skip result (strategy not applicable here)."""
        return cls(strategy=strategy, status="skipped", output=reason, **kwargs)
