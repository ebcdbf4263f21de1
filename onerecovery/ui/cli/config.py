"""
CLI commands for the build configuration (``build.yml``).
"""

from __future__ import annotations

import json
import sys

import click
import yaml

from onerecovery.ui.cli.options import build_options, resolve_config


def _resolve_or_exit(ctx: click.Context, params: dict):
    from onerecovery.core.errors import ConfigurationError

    try:
        return resolve_config(ctx, ctx.obj["workdir"], params)
    except ConfigurationError as e:
        click.secho(f"❌ {e.message}", fg="red", err=True)
        sys.exit(e.exit_code)


@click.group()
def config() -> None:
    """Show or save the resolved build configuration."""


@config.command("show")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@build_options
@click.pass_context
def config_show(ctx: click.Context, as_json: bool, **params) -> None:
    """Print the configuration a run would use (build.yml < env < flags)."""
    from onerecovery.core.config.loader import to_flat

    cfg = _resolve_or_exit(ctx, params)
    flat = to_flat(cfg)

    if as_json:
        click.echo(json.dumps(flat, indent=2))
        return

    click.secho("\n⚙️  Build configuration", fg="cyan", bold=True)
    click.echo(yaml.safe_dump(flat, default_flow_style=False, sort_keys=False).rstrip())
    click.echo()


@config.command("save")
@build_options
@click.pass_context
def config_save(ctx: click.Context, **params) -> None:
    """Save the resolved flags to build.yml (the password is never saved)."""
    from onerecovery.core.config.loader import default_config_path, save_config

    cfg = _resolve_or_exit(ctx, params)
    path = default_config_path(ctx.obj["workdir"])
    save_config(cfg, path)
    click.secho(f"✅ Configuration saved to {path}", fg="green")
