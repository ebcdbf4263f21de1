"""
Command runner — the SINGLE PLACE where external tools are started.

Every ``tar``, ``make``, ``chroot``, ``apk`` or ``sudo`` invocation in
the pipeline goes through ``CommandRunner``. Elevation, environment
overrides, output capture and interruption are centralised here.

The runner never raises for a tool failure: it returns a
``CommandResult``. Callers that treat failure as fatal use ``check()``,
which raises ``CommandError`` with the output tail attached.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from pydantic import BaseModel, Field

from onerecovery.core.errors import CommandError
from onerecovery.core.models.environment import EnvironmentProfile

logger = logging.getLogger(__name__)

_TAIL_CHARS = 2000
_TAIL_LINES = 200
_SUDO_PREFIX = ["sudo", "-n", "-E"]

_PERMISSION_MARKERS = (
    "permission denied",
    "operation not permitted",
    "cannot change ownership",
    "must be superuser",
    "are you root",
)


class CommandResult(BaseModel):
    """Outcome of one external command."""

    command: list[str] = Field(default_factory=list)
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and self.error is None

    @property
    def output(self) -> str:
        """stdout and stderr combined, for pattern scanning."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    @property
    def permission_denied(self) -> bool:
        text = f"{self.output}\n{self.error or ''}".lower()
        return any(marker in text for marker in _PERMISSION_MARKERS)

    def describe(self) -> str:
        """Short failure description for logs and error messages."""
        if self.error:
            return self.error
        tail = (self.stderr or self.stdout).strip().splitlines()
        last = tail[-1] if tail else ""
        return f"exit {self.returncode}" + (f": {last}" if last else "")


class CommandRunner:
    """Run external tools on behalf of the pipeline.

    Args:
        profile: Environment profile, used to decide how to elevate.
        echo: Forward streamed output to stderr as it arrives.
    """

    def __init__(
        self,
        profile: EnvironmentProfile | None = None,
        *,
        echo: bool = False,
    ) -> None:
        self.profile = profile or EnvironmentProfile()
        self.echo = echo

    # ── Discovery ───────────────────────────────────────────────

    def which(self, tool: str) -> str | None:
        """Return the absolute path of ``tool`` or None."""
        return shutil.which(tool)

    def has(self, tool: str) -> bool:
        return self.which(tool) is not None

    # ── Execution ───────────────────────────────────────────────

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
        """Run ``cmd`` and return its result.

        Args:
            cmd: Program and arguments.
            sudo: Elevate with ``sudo -n -E`` unless already root.
            cwd: Working directory.
            env: Extra environment variables layered on the process env.
            timeout: Seconds before the command is killed (None = no limit).
            stream: Read output line by line (long builds) instead of
                buffering it; only the last lines are kept.
            input_text: Data written to the command's stdin.
            interactive: Attach the command to the terminal (menuconfig);
                nothing is captured.
        """
        argv = list(cmd)
        elevated = self._elevate(argv, sudo)
        if elevated is None:
            return CommandResult(
                command=argv,
                returncode=126,
                error="Permission denied: not root and sudo is not available",
            )

        logger.debug("Executing: %s (cwd=%s)", " ".join(elevated), cwd or ".")
        full_env = self._merge_env(env)
        start = time.monotonic()

        try:
            if interactive:
                returncode = subprocess.run(elevated, cwd=cwd, env=full_env).returncode
                stdout = stderr = ""
            elif stream:
                returncode, stdout = self._run_streaming(elevated, cwd, full_env)
                stderr = ""
            else:
                proc = subprocess.run(
                    elevated,
                    cwd=cwd,
                    env=full_env,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    input=input_text,
                )
                returncode = proc.returncode
                stdout = proc.stdout[-_TAIL_CHARS:] if proc.stdout else ""
                stderr = proc.stderr[-_TAIL_CHARS:] if proc.stderr else ""
        except FileNotFoundError:
            return CommandResult(
                command=elevated,
                returncode=127,
                error=f"Command not found: {elevated[0]}",
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                command=elevated,
                returncode=124,
                error=f"Command timed out ({timeout}s)",
            )
        except OSError as e:
            return CommandResult(command=elevated, returncode=126, error=str(e))

        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = CommandResult(
            command=elevated,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            elapsed_ms=elapsed_ms,
        )
        if not result.ok:
            logger.debug("Command failed (%s): %s", result.describe(), " ".join(elevated))
        return result

    def pipe(
        self,
        producer: Sequence[str],
        consumer: Sequence[str],
        *,
        sudo: bool = False,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run ``producer | consumer``; fails if either side fails."""
        first = self._elevate(list(producer), False)
        second = self._elevate(list(consumer), sudo)
        assert first is not None
        if second is None:
            return CommandResult(
                command=list(consumer),
                returncode=126,
                error="Permission denied: not root and sudo is not available",
            )

        logger.debug("Executing: %s | %s", " ".join(first), " ".join(second))
        full_env = self._merge_env(env)
        start = time.monotonic()
        try:
            with subprocess.Popen(
                first, stdout=subprocess.PIPE, stderr=subprocess.PIPE, cwd=cwd, env=full_env,
            ) as head:
                with subprocess.Popen(
                    second,
                    stdin=head.stdout,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=cwd,
                    env=full_env,
                ) as tail:
                    # Let the producer see SIGPIPE if the consumer exits early
                    assert head.stdout is not None
                    head.stdout.close()
                    out, err = tail.communicate()
                head_err = head.stderr.read() if head.stderr else b""
                head.wait()
        except FileNotFoundError as e:
            return CommandResult(
                command=first + ["|"] + second,
                returncode=127,
                error=f"Command not found: {e.filename}",
            )
        except OSError as e:
            return CommandResult(command=first + ["|"] + second, returncode=126, error=str(e))

        returncode = tail.returncode or head.returncode
        stderr = (head_err + err).decode(errors="replace")
        return CommandResult(
            command=first + ["|"] + second,
            returncode=returncode,
            stdout=out.decode(errors="replace")[-_TAIL_CHARS:],
            stderr=stderr[-_TAIL_CHARS:],
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )

    def check(
        self,
        cmd: Sequence[str],
        *,
        what: str = "",
        remediation: str = "",
        **kwargs,
    ) -> CommandResult:
        """Like ``run()`` but raise ``CommandError`` on failure."""
        result = self.run(cmd, **kwargs)
        if not result.ok:
            label = what or " ".join(cmd)
            raise CommandError(
                f"{label} failed ({result.describe()})",
                returncode=result.returncode,
                output=result.output,
                remediation=remediation,
            )
        return result

    # ── Internals ───────────────────────────────────────────────

    def _elevate(self, argv: list[str], sudo: bool) -> list[str] | None:
        if not sudo or self.profile.is_root:
            return argv
        if not self.profile.has_sudo:
            return None
        return _SUDO_PREFIX + argv

    @staticmethod
    def _merge_env(env: Mapping[str, str] | None) -> dict[str, str]:
        full = os.environ.copy()
        if env:
            full.update(env)
        return full

    def _run_streaming(
        self,
        argv: list[str],
        cwd: Path | str | None,
        env: dict[str, str],
    ) -> tuple[int, str]:
        tail: deque[str] = deque(maxlen=_TAIL_LINES)
        sink: Callable[[str], object] = sys.stderr.write
        with subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        ) as proc:
            assert proc.stdout is not None
            try:
                for line in proc.stdout:
                    tail.append(line)
                    if self.echo:
                        sink(line)
            except KeyboardInterrupt:
                proc.terminate()
                proc.wait()
                raise
            returncode = proc.wait()
        return returncode, "".join(tail)
