"""
CLI command for running the build pipeline.

Thin wrapper over ``onerecovery.core.engine.executor``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from onerecovery.core.models.pipeline import Step
from onerecovery.ui.cli.options import build_options, resolve_config

STEP_CHOICES = [s.value for s in Step] + ["all"]


def _build_executor(workdir: Path, cfg, *, echo: bool):
    """Classify the host and wire the executor for ``cfg``."""
    from onerecovery.adapters.shell.command import CommandRunner
    from onerecovery.core.detection.environment import classify
    from onerecovery.core.engine.context import BuildContext
    from onerecovery.core.engine.executor import PipelineExecutor
    from onerecovery.core.engine.steps import default_steps
    from onerecovery.core.persistence.checkpoint_store import CheckpointStore

    profile = classify()
    context = BuildContext.create(workdir, cfg, profile, CommandRunner(profile, echo=echo))
    return PipelineExecutor(default_steps(), CheckpointStore(context.layout.checkpoint), context)


@click.command()
@click.argument("step", type=click.Choice(STEP_CHOICES, case_sensitive=False), default="all")
@click.option(
    "--resume", "-r", is_flag=True,
    help="Continue after the last completed step; with STEP, run STEP through build.",
)
@click.option("--clean-start", is_flag=True, help="Run cleanup before building.")
@click.option("--clean-end", is_flag=True, help="Run cleanup after a successful build.")
@click.option("--skip-prepare", is_flag=True, help="Skip host preparation.")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Do not ask before cleanup.")
@click.option("--save-config", "save_flags", is_flag=True, help="Save the resolved flags to build.yml.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output the report as JSON.")
@build_options
@click.pass_context
def run(
    ctx: click.Context,
    step: str,
    resume: bool,
    clean_start: bool,
    clean_end: bool,
    skip_prepare: bool,
    assume_yes: bool,
    save_flags: bool,
    as_json: bool,
    **params,
) -> None:
    """Run the build pipeline, or a single STEP of it.

    STEP is one of prepare, fetch, install, configure, build, cleanup or
    all (default). 'all' runs prepare through build; cleanup only runs
    when asked for.

    Examples:

        onerecovery run --minimal --use-swap

        onerecovery run --resume

        onerecovery run build --jobs 4
    """
    from onerecovery.core.config.loader import default_config_path, save_config
    from onerecovery.core.errors import ConfigurationError
    from onerecovery.core.observability.logging_config import ERROR_LOG_NAME, attach_error_log

    workdir: Path = ctx.obj["workdir"]
    step = step.lower()

    try:
        cfg = resolve_config(ctx, workdir, params)
    except ConfigurationError as e:
        click.secho(f"❌ {e.message}", fg="red", err=True)
        if e.remediation:
            click.echo(f"   {e.remediation}", err=True)
        sys.exit(e.exit_code)

    if save_flags:
        saved = default_config_path(workdir)
        save_config(cfg, saved)
        if not as_json:
            click.secho(f"💾 Configuration saved to {saved}", fg="green")

    wants_cleanup = step == Step.CLEANUP.value or clean_start or clean_end
    if wants_cleanup and not (assume_yes or cfg.force_cleanup):
        if not click.confirm(
            f"Remove build trees, archives and the checkpoint in {workdir}?", default=False,
        ):
            click.secho("Aborted.", fg="yellow")
            sys.exit(1)

    workdir.mkdir(parents=True, exist_ok=True)
    attach_error_log(workdir / ERROR_LOG_NAME)
    executor = _build_executor(workdir, cfg, echo=ctx.obj.get("verbose", False) or ctx.obj.get("debug", False))
    report = executor.run(
        step,
        resume=resume,
        skip_prepare=skip_prepare,
        clean_start=clean_start,
        clean_end=clean_end,
    )

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        sys.exit(report.exit_code)

    quiet = ctx.obj.get("quiet", False)
    if report.ok:
        if report.nothing_to_do:
            click.secho("✅ Nothing to do: the build is already complete", fg="green")
        elif not quiet:
            for outcome in report.outcomes:
                icon = "⏭️ " if outcome.status == "skipped" else "✅"
                click.echo(f"   {icon} {outcome.step.value} ({outcome.duration_ms / 1000:.1f}s)")
            artifact = executor.context.layout.artifact
            if Step.BUILD in report.executed and artifact.is_file():
                click.secho(f"\n🎉 Image ready: {artifact}", fg="green", bold=True)
            if executor.context.generated_password:
                click.secho(
                    f"🔑 Generated root password saved to {executor.context.layout.password_file}",
                    fg="yellow",
                )
        return

    error = report.error
    where = f" in step '{report.failed_step.value}'" if report.failed_step else ""
    if error is not None:
        click.secho(f"❌ Build failed{where}: {error.message}", fg="red", bold=True, err=True)
        if error.remediation:
            click.echo(f"   💡 {error.remediation}", err=True)
    else:
        click.secho(f"⛔ Build interrupted{where}", fg="yellow", err=True)
    if report.failed_step is not None:
        click.echo(f"   Resume with: {executor.on_failure_hint(report.failed_step)}", err=True)
    sys.exit(report.exit_code)
