"""
Strategy base — the protocol between the selector and concrete strategies.

A strategy is one concrete way to perform a risky operation under a
given environment. The selector orders them; ``try_strategies`` runs
them until one succeeds.

To create a new strategy:
    1. Subclass Strategy
    2. Set kind and operation, implement name and execute
    3. Add it to the chain table in ``selector``
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel, Field

from onerecovery.core.models.strategy import Operation, StrategyKind, StrategyResult


class ExtractRequest(BaseModel):
    """Unpack ``archive`` into ``target``."""

    archive: Path
    target: Path
    strip_components: int = 0
    skip_ownership: bool = False
    uid: int = -1
    gid: int = -1

    @property
    def marker(self) -> Path:
        """Completion marker, kept next to the target directory."""
        return self.target.parent / f".{self.target.name}.extraction_complete"

    @property
    def compression(self) -> str:
        name = self.archive.name
        if name.endswith((".tar.gz", ".tgz")):
            return "gz"
        if name.endswith((".tar.xz", ".txz")):
            return "xz"
        if name.endswith(".tar.zst"):
            return "zst"
        return ""


class SymlinkRequest(BaseModel):
    """Create ``link`` pointing at ``target`` (replacing any existing entry)."""

    target: str
    link: Path


class ChrootRequest(BaseModel):
    """Run ``command`` inside the root filesystem at ``root``."""

    root: Path
    command: list[str]
    env: dict[str, str] = Field(default_factory=dict)
    critical: bool = True


Request = ExtractRequest | SymlinkRequest | ChrootRequest


class Strategy(ABC):
    """Abstract base class for all strategies.

    Strategies NEVER raise for an operational failure. Everything is
    captured in the StrategyResult so the chain can continue.
    """

    kind: StrategyKind
    operation: Operation

    # Only attempt this strategy when the previous attempt failed on
    # permissions (elevated retries on bare hosts).
    only_after_permission_error: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """The strategy identifier used in logs and error messages."""

    def is_available(self, request: Request) -> bool:
        """Whether the strategy's prerequisites are present. Must be fast."""
        return True

    @abstractmethod
    def execute(self, request: Request) -> StrategyResult:
        """Perform the operation and report the outcome."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} kind={self.kind.value}>"
