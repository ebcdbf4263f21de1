"""
Build flags shared by ``run``, ``config show`` and ``config save``.

Only flags the user actually passed become overrides: click's parameter
source tells a typed ``--no-swap`` apart from the default, so an unset
flag never masks ``build.yml`` or the environment.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
from click.core import ParameterSource

from onerecovery.core.config.loader import (
    build_config,
    default_config_path,
    load_saved,
    overrides_from_env,
    preset_overrides,
)
from onerecovery.core.models.config import BuildConfig
from onerecovery.core.models.features import FEATURES

# CLI parameter -> flat config key, for flags passed through unchanged
_PASSTHROUGH = {
    "compression_tool": "compression_tool",
    "kernel_config": "kernel_config",
    "interactive_config": "interactive_config",
    "extra_packages": "extra_packages",
    "make_verbose": "make_verbose",
    "jobs": "jobs",
    "use_swap": "use_swap",
    "use_cache": "use_cache",
    "cache_dir": "cache_dir",
    "keep_ccache": "keep_ccache",
    "password_length": "password_length",
}


def _feature_param(field: str) -> str:
    return f"feature_{field}"


def build_options(func: Callable) -> Callable:
    """Attach every feature, build, resource and password flag to a command."""
    options = [
        # ── Features ──
        *(
            click.option(
                f"--with-{spec.flag}/--without-{spec.flag}",
                _feature_param(spec.field),
                default=False,
                help=f"{spec.help}.",
            )
            for spec in FEATURES
        ),
        click.option(
            "--with-all-advanced/--without-all-advanced", "all_advanced", default=False,
            help="Toggle every advanced tool group at once.",
        ),
        click.option("--minimal", is_flag=True, help="Minimal image: no ZFS, Btrfs, recovery, network, crypto or TUI."),
        click.option("--full", is_flag=True, help="Enable every feature."),
        # ── Build ──
        click.option(
            "--compression-tool", type=click.Choice(["upx", "xz", "zstd"]), default=None,
            help="Image compressor (only upx compresses; xz/zstd keep the image as is).",
        ),
        click.option(
            "--kernel-config",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            default=None,
            help="Base kernel config replacing kernel-configs/{standard,minimal}.config.",
        ),
        click.option("--interactive-config", is_flag=True, help="Run make menuconfig after merging."),
        click.option("--extra-packages", default=None, help="Additional Alpine packages (comma-separated)."),
        click.option("--make-verbose", is_flag=True, help="Pass V=1 to make."),
        # ── Resources ──
        click.option("--jobs", "-j", type=click.IntRange(min=1), default=None, help="Upper bound on build threads."),
        click.option("--use-swap/--no-swap", default=False, help="Create a temporary swap file on low memory."),
        click.option("--use-cache/--no-cache", default=True, help="Cache downloads and compiler output."),
        click.option(
            "--cache-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
            help="Cache root (default: ~/.onerecovery/cache).",
        ),
        click.option("--keep-ccache", is_flag=True, help="Keep the compiler cache after the build."),
        # ── Password ──
        click.option("--password", default=None, help="Root password for the image."),
        click.option("--random-password", is_flag=True, help="Generate a random root password (default)."),
        click.option("--no-password", is_flag=True, help="Leave the root password empty (unsafe)."),
        click.option(
            "--password-length", type=click.IntRange(8, 64), default=12, show_default=True,
            help="Length of a generated password.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _given(ctx: click.Context, name: str) -> bool:
    source = ctx.get_parameter_source(name)
    return source is not None and source is not ParameterSource.DEFAULT


def cli_overrides(ctx: click.Context, params: dict[str, Any]) -> dict[str, Any]:
    """Flat config overrides for the flags given on the command line.

    Raises:
        click.UsageError: mutually exclusive flags were combined.
    """
    if params.get("minimal") and params.get("full"):
        raise click.UsageError("--minimal and --full cannot be combined")

    overrides = preset_overrides(
        minimal=params.get("minimal", False),
        full=params.get("full", False),
        all_advanced=params["all_advanced"] if _given(ctx, "all_advanced") else None,
    )
    for spec in FEATURES:
        name = _feature_param(spec.field)
        if _given(ctx, name):
            overrides[spec.field] = params[name]

    for param, key in _PASSTHROUGH.items():
        if _given(ctx, param):
            overrides[key] = params[param]

    password_modes = [
        mode for mode, chosen in (
            ("custom", params.get("password") is not None),
            ("random", params.get("random_password")),
            ("none", params.get("no_password")),
        ) if chosen
    ]
    if len(password_modes) > 1:
        raise click.UsageError("Use only one of --password, --random-password and --no-password")
    if password_modes:
        overrides["password_mode"] = password_modes[0]
        if password_modes[0] == "custom":
            overrides["password"] = params["password"]
    return overrides


def resolve_config(ctx: click.Context, workdir: Path, params: dict[str, Any]) -> BuildConfig:
    """Layer build.yml, the environment and the command line into one config.

    Raises:
        ConfigurationError: a layer holds an invalid value.
    """
    return build_config(
        load_saved(default_config_path(workdir)),
        overrides_from_env(os.environ),
        cli_overrides(ctx, params),
    )
