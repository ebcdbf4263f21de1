"""
Build errors — the failure taxonomy surfaced to the pipeline executor.

Core services raise these; strategies and the command runner never do
(they return result objects). The executor catches ``BuildError`` once,
logs it to the console and the persistent error log, and converts it
into a non-zero exit code.

Categories:
    network              download failed, never retried automatically
    extraction           every extraction strategy exhausted
    permission           privileged operation denied with no fallback left
    resource-exhaustion  disk or memory ran out inside a build tool
    configuration        missing patch/base config/zfiles, bad flag values
"""

from __future__ import annotations


class BuildError(Exception):
    """Base class for every failure the pipeline knows how to report."""

    category = "build"
    exit_code = 1

    def __init__(self, message: str, *, remediation: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def to_dict(self) -> dict[str, str | int]:
        return {
            "category": self.category,
            "message": self.message,
            "remediation": self.remediation,
            "exit_code": self.exit_code,
        }


class ConfigurationError(BuildError):
    category = "configuration"
    exit_code = 2


class NetworkError(BuildError):
    category = "network"
    exit_code = 3


class ExtractionError(BuildError):
    category = "extraction"
    exit_code = 4


class PrivilegeError(BuildError):
    category = "permission"
    exit_code = 5


class ResourceExhaustionError(BuildError):
    category = "resource-exhaustion"
    exit_code = 6


class PipelineOrderError(BuildError):
    """A step was requested before its predecessors completed."""

    category = "pipeline"
    exit_code = 2


class CommandError(BuildError):
    """An external tool exited non-zero.

    The tool's own return code is propagated as the process exit code.
    """

    category = "command"

    def __init__(
        self,
        message: str,
        *,
        returncode: int = 1,
        output: str = "",
        remediation: str = "",
    ) -> None:
        super().__init__(message, remediation=remediation)
        self.returncode = returncode
        self.output = output
        self.exit_code = returncode if returncode > 0 else 1
