"""
Pipeline models — the fixed step order and the persisted checkpoint.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Step(str, Enum):
    """Pipeline steps, declared in execution order."""

    PREPARE = "prepare"
    FETCH = "fetch"
    INSTALL = "install"
    CONFIGURE = "configure"
    BUILD = "build"
    CLEANUP = "cleanup"

    @property
    def position(self) -> int:
        return list(Step).index(self)

    def successor(self) -> Step | None:
        """The step that runs after this one, or None for the last step."""
        order = list(Step)
        i = order.index(self)
        return order[i + 1] if i + 1 < len(order) else None

    def predecessor(self) -> Step | None:
        order = list(Step)
        i = order.index(self)
        return order[i - 1] if i > 0 else None

    @classmethod
    def parse(cls, name: str) -> Step:
        """Look up a step by its CLI name (case-insensitive)."""
        try:
            return cls(name.strip().lower())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown step '{name}' (expected one of: {valid})") from None


# Steps run by "all"; cleanup is only run on request.
BUILD_SEQUENCE: tuple[Step, ...] = (
    Step.PREPARE,
    Step.FETCH,
    Step.INSTALL,
    Step.CONFIGURE,
    Step.BUILD,
)


class Checkpoint(BaseModel):
    """Last successfully completed step.

    The digest covers step and timestamp so a truncated or hand-edited
    record is rejected on load.
    """

    step: Step
    timestamp: str = Field(default_factory=_now_iso)
    digest: str = ""

    def compute_digest(self) -> str:
        payload = f"{self.step.value}|{self.timestamp}".encode()
        return hashlib.sha256(payload).hexdigest()

    def sealed(self) -> Checkpoint:
        """Return a copy carrying a fresh digest."""
        return self.model_copy(update={"digest": self.compute_digest()})

    @property
    def valid(self) -> bool:
        return bool(self.digest) and self.digest == self.compute_digest()
