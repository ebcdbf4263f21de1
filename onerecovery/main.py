"""
OneRecovery builder — CLI entrypoint.

Usage:
    onerecovery --help
    onerecovery run                   # prepare → build
    onerecovery run --resume          # continue after the last completed step
    onerecovery run build --use-swap  # one step
    onerecovery status
    onerecovery detect --json
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from onerecovery import __version__
from onerecovery.core.observability.logging_config import ERROR_LOG_NAME, setup_logging
from onerecovery.ui.cli.config import config
from onerecovery.ui.cli.run import run


@click.group()
@click.version_option(version=__version__, prog_name="onerecovery")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--workdir",
    "-w",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Build working directory (default: current directory).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    workdir: Path | None,
) -> None:
    """OneRecovery — build a single-file EFI recovery image."""
    ctx.ensure_object(dict)
    resolved = (workdir or Path.cwd()).resolve()
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["workdir"] = resolved

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("ONERECOVERY_LOG_LEVEL", "WARNING")

    setup_logging(
        level=level,
        log_file=os.environ.get("ONERECOVERY_LOG_FILE"),
        log_file_level=os.environ.get("ONERECOVERY_LOG_FILE_LEVEL"),
        error_log=resolved / ERROR_LOG_NAME if resolved.is_dir() else None,
    )
    # `run` attaches the error log itself once it has created the workdir


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show checkpoint, configuration and artifacts."""
    from onerecovery.core.config.loader import (
        build_config,
        default_config_path,
        load_saved,
        overrides_from_env,
    )
    from onerecovery.core.engine.context import BuildLayout
    from onerecovery.core.errors import ConfigurationError
    from onerecovery.core.persistence.checkpoint_store import CheckpointStore

    layout = BuildLayout(ctx.obj["workdir"])
    checkpoint = CheckpointStore(layout.checkpoint).load()
    try:
        cfg = build_config(load_saved(default_config_path(layout.workdir)), overrides_from_env(os.environ))
    except ConfigurationError as e:
        click.secho(f"❌ {e.message}", fg="red")
        sys.exit(e.exit_code)

    next_step = checkpoint.step.successor() if checkpoint else None
    artifacts = {
        "artifact": layout.artifact,
        "password_file": layout.password_file,
        "rootfs": layout.rootfs,
        "kernel": layout.kernel,
        "error_log": layout.error_log,
    }

    if as_json:
        click.echo(json.dumps({
            "workdir": str(layout.workdir),
            "checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
            "next_step": next_step.value if next_step else None,
            "features": cfg.features.enabled(),
            "config_file": layout.config_file.is_file(),
            "artifacts": {name: path.exists() for name, path in artifacts.items()},
        }, indent=2))
        return

    click.secho(f"\n📋 OneRecovery build in {layout.workdir}", fg="cyan", bold=True)
    if checkpoint:
        click.echo(f"   Last completed step: {checkpoint.step.value} (at {checkpoint.timestamp})")
        if next_step:
            click.echo(f"   Next: onerecovery run {next_step.value} --resume")
    else:
        click.echo("   No checkpoint: the next run starts at 'prepare'")

    click.echo()
    source = "build.yml + environment" if layout.config_file.is_file() else "defaults + environment"
    click.secho(f"   Configuration ({source}):", fg="white", bold=True)
    click.echo(f"     Features: {', '.join(cfg.features.enabled()) or 'none'}")
    click.echo(f"     Kernel config: {'minimal' if cfg.features.minimal_kernel else 'standard'}")
    click.echo(f"     Compression: {cfg.compression_tool if cfg.features.compression else 'off'}")
    click.echo(f"     Cache: {cfg.cache_dir if cfg.use_cache else 'disabled'}")

    click.echo()
    click.secho("   Artifacts:", fg="white", bold=True)
    for name, path in artifacts.items():
        marker = "✓" if path.exists() else "·"
        click.echo(f"     {marker} {name}: {path}")
    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--jobs", "-j", type=click.IntRange(min=1), default=None, help="Upper bound on threads.")
@click.option("--use-swap", is_flag=True, help="Plan as if swap may be created.")
def detect(as_json: bool, jobs: int | None, use_swap: bool) -> None:
    """Detect the environment and the resource plan."""
    from onerecovery.adapters.shell.command import CommandRunner
    from onerecovery.core.detection.environment import classify
    from onerecovery.core.planning.resources import ResourcePlanner

    profile = classify()
    plan = ResourcePlanner(CommandRunner(profile), use_swap=use_swap, jobs=jobs).plan(profile)

    if as_json:
        click.echo(json.dumps({"environment": profile.to_dict(), "resources": plan.to_dict()}, indent=2))
        return

    click.secho("\n🔍 Environment", fg="cyan", bold=True)
    click.echo(f"   Kind:      {profile.kind.value}")
    click.echo(f"   Container: {'yes' if profile.is_container else 'no'}")
    click.echo(f"   CI:        {'yes' if profile.is_ci else 'no'}")
    privilege = "root" if profile.is_root else ("sudo" if profile.has_sudo else "none")
    click.echo(f"   Privilege: {privilege}")

    click.secho("\n⚙️  Resource plan", fg="cyan", bold=True)
    click.echo(f"   Cores:     {plan.core_count}")
    click.echo(f"   Memory:    {plan.available_kb / 1024 / 1024:.1f} GiB available")
    click.echo(f"   Threads:   {plan.thread_count}")
    click.echo(f"   KCFLAGS:   {plan.compiler_flags}")
    if plan.use_swap:
        click.echo(f"   Swap:      {plan.swap_size_mb} MB would be created")
    click.echo()


cli.add_command(run)
cli.add_command(config)


if __name__ == "__main__":
    cli()
