"""
Environment models — where the pipeline is running.

The classifier produces one ``EnvironmentProfile`` per run. Downstream
strategy tables dispatch on ``EnvironmentKind`` instead of comparing
strings.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class EnvironmentKind(str, Enum):
    """Closed set of execution environments."""

    BARE = "bare"
    DOCKER = "docker"
    CI = "ci"


class EnvironmentProfile(BaseModel):
    """Immutable snapshot of the host, computed once at start-up."""

    model_config = ConfigDict(frozen=True)

    is_container: bool = False
    is_ci: bool = False
    has_sudo: bool = False
    uid: int = -1
    gid: int = -1

    @property
    def kind(self) -> EnvironmentKind:
        # CI runners are containers or VMs with their own quirks; CI wins.
        if self.is_ci:
            return EnvironmentKind.CI
        if self.is_container:
            return EnvironmentKind.DOCKER
        return EnvironmentKind.BARE

    @property
    def is_root(self) -> bool:
        return self.uid == 0

    @property
    def can_elevate(self) -> bool:
        """Whether privileged commands can run at all (root or sudo)."""
        return self.is_root or self.has_sudo

    def to_dict(self) -> dict[str, object]:
        data = self.model_dump()
        data["kind"] = self.kind.value
        return data
