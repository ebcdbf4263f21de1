"""
Pipeline executor — the resumable build loop.

Takes the ordered pipeline steps, decides which of them to run for a
request (``all``, a single step, or a resume), executes them one at a
time and commits the checkpoint after every success.

Flow:
    request → plan steps → (idempotency check) → action → checkpoint → next

Failures halt the run. The checkpoint is left at the last completed
step, the error is logged (and so lands in ``build_error.log``) with the
command that resumes the build, and the report carries the exit code.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

from onerecovery.core.engine.context import BuildContext
from onerecovery.core.engine.steps import PipelineStep
from onerecovery.core.errors import BuildError, PipelineOrderError
from onerecovery.core.models.pipeline import BUILD_SEQUENCE, Step
from onerecovery.core.persistence.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130
EXIT_TERMINATED = 143


class PipelineInterrupted(KeyboardInterrupt):
    """Raised inside the run when SIGTERM arrives."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"received signal {signum}")
        self.exit_code = 128 + signum


def default_hint(step: Step) -> str:
    return f"onerecovery run {step.value} --resume"


@dataclass
class StepOutcome:
    """What happened to one step."""

    step: Step
    status: str  # "ok" | "skipped" | "failed" | "interrupted"
    duration_ms: int = 0
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "step": self.step.value,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class PipelineReport:
    """Result of one ``run()``."""

    target: str = "all"
    planned: list[Step] = field(default_factory=list)
    outcomes: list[StepOutcome] = field(default_factory=list)
    exit_code: int = 0
    error: BuildError | None = None
    failed_step: Step | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def executed(self) -> list[Step]:
        return [o.step for o in self.outcomes if o.status in ("ok", "skipped")]

    @property
    def nothing_to_do(self) -> bool:
        return self.ok and not self.outcomes

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "status": "ok" if self.ok else "failed",
            "exit_code": self.exit_code,
            "planned": [s.value for s in self.planned],
            "failed_step": self.failed_step.value if self.failed_step else None,
            "error": self.error.to_dict() if self.error else None,
            "steps": [o.to_dict() for o in self.outcomes],
        }


class PipelineExecutor:
    """Run pipeline steps in order with checkpointing.

    Args:
        steps: Every pipeline step, one per ``Step`` value.
        store: Checkpoint persistence.
        context: Collaborators handed to each step.
        on_failure_hint: Builds the resume command shown after a failure.
    """

    def __init__(
        self,
        steps: Sequence[PipelineStep],
        store: CheckpointStore,
        context: BuildContext,
        *,
        on_failure_hint: Callable[[Step], str] = default_hint,
    ) -> None:
        self._steps = {s.step: s for s in steps}
        missing = [s.value for s in Step if s not in self._steps]
        if missing:
            raise ValueError(f"Pipeline is missing steps: {', '.join(missing)}")
        self.store = store
        self.context = context
        self.on_failure_hint = on_failure_hint
        self._current: Step | None = None

    # ── Planning ────────────────────────────────────────────────

    def plan(
        self,
        target: str | Step = "all",
        *,
        resume: bool = False,
        skip_prepare: bool = False,
    ) -> list[Step]:
        """Steps a request would run, in order.

        A single step runs alone; with ``resume`` it continues from that
        step through the end of the build.

        Raises:
            PipelineOrderError: a single step was requested before its
                predecessor completed.
        """
        if target == "all":
            sequence = list(BUILD_SEQUENCE)
            if skip_prepare:
                sequence.remove(Step.PREPARE)
            if not resume:
                return sequence

            checkpoint = self.store.load()
            if checkpoint is None:
                logger.info("No checkpoint found, starting from %s", sequence[0].value)
                return sequence
            logger.info("Resuming after '%s' (completed %s)", checkpoint.step.value, checkpoint.timestamp)
            return [s for s in sequence if s.position > checkpoint.step.position]

        step = target if isinstance(target, Step) else Step.parse(target)
        if step is Step.CLEANUP:
            return [step]

        predecessor = step.predecessor()
        checkpoint = self.store.load()
        if predecessor is None or checkpoint is None or checkpoint.step.position >= predecessor.position:
            if checkpoint is not None and checkpoint.step.position > step.position:
                logger.warning(
                    "Re-running '%s' moves the checkpoint back from '%s'",
                    step.value, checkpoint.step.value,
                )
            if resume:
                # STEP --resume: continue from STEP through the end of the build
                return [s for s in BUILD_SEQUENCE if s.position >= step.position]
            return [step]

        raise PipelineOrderError(
            f"Cannot run '{step.value}': last completed step is '{checkpoint.step.value}', "
            f"'{predecessor.value}' must complete first",
            remediation=f"onerecovery run {checkpoint.step.successor().value}",
        )

    # ── Execution ───────────────────────────────────────────────

    def run(
        self,
        target: str | Step = "all",
        *,
        resume: bool = False,
        skip_prepare: bool = False,
        clean_start: bool = False,
        clean_end: bool = False,
    ) -> PipelineReport:
        """Execute a request. Never raises for step failures; see the report."""
        report = PipelineReport(target=target.value if isinstance(target, Step) else str(target))

        with _terminate_on_sigterm():
            try:
                if clean_start and not self._execute(Step.CLEANUP, report):
                    return report

                try:
                    report.planned = self.plan(target, resume=resume, skip_prepare=skip_prepare)
                except BuildError as e:
                    self._fail(report, None, e)
                    return report

                if not report.planned:
                    logger.info("Nothing to do: checkpoint already at the end of the requested range")

                for step in report.planned:
                    if not self._execute(step, report):
                        return report

                if clean_end and Step.CLEANUP not in report.planned:
                    self._execute(Step.CLEANUP, report)
            except KeyboardInterrupt as e:
                step = self._current
                report.exit_code = getattr(e, "exit_code", EXIT_INTERRUPTED)
                report.failed_step = step
                if step is not None:
                    report.outcomes.append(StepOutcome(step=step, status="interrupted"))
                    logger.error(
                        "Build interrupted during '%s'; checkpoint kept. Resume with: %s",
                        step.value, self.on_failure_hint(step),
                    )
                else:
                    logger.error("Build interrupted")
        return report

    def _execute(self, step: Step, report: PipelineReport) -> bool:
        pipeline_step = self._steps[step]
        self._current = step
        start = time.monotonic()
        try:
            if pipeline_step.satisfied is not None and pipeline_step.satisfied(self.context):
                logger.info("Step '%s' already satisfied, skipping", step.value)
                status = "skipped"
            else:
                logger.info("▶ Step '%s': %s", step.value, pipeline_step.description or step.value)
                pipeline_step.action(self.context)
                status = "ok"
            self._commit(step)
        except BuildError as e:
            self._fail(report, step, e, start)
            self._current = None
            return False
        except OSError as e:
            # Filesystem failure inside a step (disk full, workdir permissions)
            self._fail(report, step, BuildError(f"{type(e).__name__}: {e}"), start)
            self._current = None
            return False
        except Exception as e:
            logger.debug("Unexpected error in step '%s'", step.value, exc_info=True)
            self._fail(report, step, _unexpected(e), start)
            self._current = None
            return False
        self._current = None

        elapsed = int((time.monotonic() - start) * 1000)
        report.outcomes.append(StepOutcome(step=step, status=status, duration_ms=elapsed))
        logger.info("✓ Step '%s' %s in %.1fs", step.value, status, elapsed / 1000)
        return True

    def _commit(self, step: Step) -> None:
        if step is Step.CLEANUP:
            self.store.clear()
        else:
            self.store.save(step)

    def _fail(
        self,
        report: PipelineReport,
        step: Step | None,
        error: BuildError,
        start: float | None = None,
    ) -> None:
        report.error = error
        report.failed_step = step
        report.exit_code = error.exit_code or 1
        if step is not None:
            elapsed = int((time.monotonic() - start) * 1000) if start is not None else 0
            report.outcomes.append(
                StepOutcome(step=step, status="failed", duration_ms=elapsed, error=error.message),
            )
            logger.error("Step '%s' failed [%s]: %s", step.value, error.category, error.message)
        else:
            logger.error("%s", error.message)
        if error.remediation:
            logger.error("Hint: %s", error.remediation)
        if step is not None:
            logger.error("Resume with: %s", self.on_failure_hint(step))


@contextmanager
def _terminate_on_sigterm() -> Iterator[None]:
    """Turn SIGTERM into ``PipelineInterrupted`` while the pipeline runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        raise PipelineInterrupted(signum)

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _unexpected(error: Exception) -> BuildError:
    """Wrap an error no step anticipated so it is reported like the rest."""
    wrapped = BuildError(
        f"{type(error).__name__}: {error}",
        remediation="Run with --debug for the full traceback.",
    )
    wrapped.__cause__ = error
    return wrapped
