"""
Fake command runner — test double for every external tool.

Records each command instead of executing it. Responses are configured
per program name; a response may be a ``CommandResult`` or a callable
that receives the argv (so tests can simulate side effects such as
``tar`` populating a directory). Elevated calls are looked up as
``sudo:<program>`` first, then ``<program>``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path

from onerecovery.adapters.shell.command import _SUDO_PREFIX, CommandResult, CommandRunner
from onerecovery.core.models.environment import EnvironmentProfile

Response = CommandResult | Callable[[list[str]], CommandResult]


class FakeRunner(CommandRunner):
    """Universal fake runner for tests.

    By default every command succeeds with empty output and every tool
    in ``tools`` is reported as installed.
    """

    def __init__(
        self,
        profile: EnvironmentProfile | None = None,
        *,
        tools: Iterable[str] = (),
    ) -> None:
        super().__init__(profile or EnvironmentProfile(uid=1000, gid=1000))
        self.tools = set(tools)
        self._responses: dict[str, Response] = {}
        self._call_log: list[list[str]] = []
        self._call_env: list[dict[str, str]] = []

    @property
    def call_log(self) -> list[list[str]]:
        """Every argv this runner has received, after elevation."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def commands_for(self, program: str) -> list[list[str]]:
        """All recorded commands whose program is ``program``."""
        return [argv for argv in self._call_log if _program(argv) == program]

    def env_for(self, program: str) -> list[dict[str, str]]:
        return [
            env for argv, env in zip(self._call_log, self._call_env, strict=True)
            if _program(argv) == program
        ]

    def which(self, tool: str) -> str | None:
        return f"/usr/bin/{tool}" if tool in self.tools else None

    def set_response(self, program: str, response: Response) -> None:
        """Set a custom response for a program (``sudo:<program>`` for elevated calls)."""
        self._responses[program] = response

    def set_failure(
        self,
        program: str,
        stderr: str = "Mock failure",
        returncode: int = 1,
    ) -> None:
        """Configure a program to fail."""
        self._responses[program] = CommandResult(returncode=returncode, stderr=stderr)

    def run(
        self,
        cmd: Sequence[str],
        *,
        sudo: bool = False,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        stream: bool = False,
        input_text: str | None = None,
        interactive: bool = False,
    ) -> CommandResult:
        argv = self._elevate(list(cmd), sudo)
        if argv is None:
            return CommandResult(
                command=list(cmd),
                returncode=126,
                error="Permission denied: not root and sudo is not available",
            )
        return self._respond(argv, env)

    def pipe(
        self,
        producer: Sequence[str],
        consumer: Sequence[str],
        *,
        sudo: bool = False,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        first = self._respond(list(producer), env)
        if not first.ok:
            return first
        return self.run(consumer, sudo=sudo, cwd=cwd, env=env)

    def _respond(self, argv: list[str], env: Mapping[str, str] | None) -> CommandResult:
        self._call_log.append(argv)
        self._call_env.append(dict(env or {}))

        program = _program(argv)
        elevated = argv[: len(_SUDO_PREFIX)] == _SUDO_PREFIX
        response = None
        if elevated:
            response = self._responses.get(f"sudo:{program}")
        if response is None:
            response = self._responses.get(program)

        if response is None:
            return CommandResult(command=argv)
        if callable(response):
            return response(argv)
        return response.model_copy(update={"command": argv})


def _program(argv: list[str]) -> str:
    if argv[: len(_SUDO_PREFIX)] == _SUDO_PREFIX:
        argv = argv[len(_SUDO_PREFIX):]
    return Path(argv[0]).name if argv else ""
