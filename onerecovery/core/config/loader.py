"""
Build configuration loader.

Builds the single immutable ``BuildConfig`` for a run from four layers,
later layers winning:

    defaults  <  build.yml (last saved flag set)  <  environment  <  CLI flags

All layers use the same flat key space (``zfs``, ``use_swap``,
``password_mode`` ...). ``build.yml`` is a YAML mapping of those keys;
the password itself is never written to it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from onerecovery.core.errors import ConfigurationError
from onerecovery.core.models.config import BuildConfig
from onerecovery.core.models.features import ADVANCED_GROUPS, FEATURES, MINIMAL_DISABLES

logger = logging.getLogger(__name__)

CONFIG_FILE = "build.yml"

FEATURE_KEYS: tuple[str, ...] = tuple(spec.field for spec in FEATURES) + ("minimal_kernel",)
_PASSWORD_KEYS = {"password_mode": "mode", "password_length": "length", "password": "password"}

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

# Environment variable -> flat key, for non-feature settings
_ENV_SETTINGS: dict[str, str] = {
    "COMPRESSION_TOOL": "compression_tool",
    "BUILD_JOBS": "jobs",
    "USE_SWAP": "use_swap",
    "USE_CACHE": "use_cache",
    "CACHE_DIR": "cache_dir",
    "KEEP_CCACHE": "keep_ccache",
    "EXTRA_PACKAGES": "extra_packages",
    "FORCE_CLEANUP": "force_cleanup",
    "INTERACTIVE_CONFIG": "interactive_config",
}
_BOOL_SETTINGS = {"use_swap", "use_cache", "keep_ccache", "force_cleanup", "interactive_config"}


def default_config_path(workdir: Path) -> Path:
    return workdir / CONFIG_FILE


def parse_bool(value: Any) -> bool | None:
    """Interpret a flag value; None when it is not recognisably boolean."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    return None


def split_packages(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [p.strip() for p in str(value).replace(" ", ",").split(",") if p.strip()]


# ── Layers ──────────────────────────────────────────────────────


def load_saved(path: Path) -> dict[str, Any]:
    """Read ``build.yml``. Missing file → empty layer.

    Raises:
        ConfigurationError: the file exists but is not a YAML mapping.
    """
    if not path.is_file():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in {path}: {e}",
            remediation=f"Fix or delete {path}.",
        ) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping, got {type(raw).__name__}")

    unknown = sorted(set(raw) - _known_keys())
    if unknown:
        logger.warning("Ignoring unknown keys in %s: %s", path, ", ".join(unknown))
    layer = {k: v for k, v in raw.items() if k in _known_keys()}
    layer.pop("password", None)
    if layer.get("password_mode") == "custom":
        logger.warning("%s asks for a custom password but never stores one, generating a random one", path)
        layer["password_mode"] = "random"
    logger.debug("Loaded saved build config from %s", path)
    return layer


def overrides_from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    """Flat overrides from INCLUDE_* and the other build variables."""
    layer: dict[str, Any] = {}
    feature_env = {spec.env: spec.field for spec in FEATURES}
    feature_env["INCLUDE_MINIMAL_KERNEL"] = "minimal_kernel"

    for var, key in feature_env.items():
        if var in environ:
            value = parse_bool(environ[var])
            if value is None:
                logger.warning("Ignoring %s=%r (expected true/false)", var, environ[var])
            else:
                layer[key] = value

    for var, key in _ENV_SETTINGS.items():
        if var not in environ or environ[var] == "":
            continue
        value: Any = environ[var]
        if key in _BOOL_SETTINGS:
            value = parse_bool(value)
            if value is None:
                logger.warning("Ignoring %s=%r (expected true/false)", var, environ[var])
                continue
        elif key == "extra_packages":
            value = split_packages(value)
        layer[key] = value
    return layer


def preset_overrides(
    *,
    minimal: bool = False,
    full: bool = False,
    all_advanced: bool | None = None,
) -> dict[str, Any]:
    """Feature presets, expanded to flat keys. Explicit toggles are applied after these."""
    layer: dict[str, Any] = {}
    if full:
        layer.update({spec.field: True for spec in FEATURES})
        layer["minimal_kernel"] = False
    if minimal:
        layer.update({name: False for name in MINIMAL_DISABLES})
        layer["minimal_kernel"] = True
    if all_advanced is not None:
        layer.update({name: all_advanced for name in ADVANCED_GROUPS})
    return layer


# ── Resolution ──────────────────────────────────────────────────


def build_config(*layers: Mapping[str, Any]) -> BuildConfig:
    """Merge flat layers (later wins) into a validated ``BuildConfig``.

    Raises:
        ConfigurationError: a value fails validation.
    """
    flat: dict[str, Any] = {}
    for layer in layers:
        flat.update({k: v for k, v in layer.items() if v is not None})

    features = {k: flat.pop(k) for k in FEATURE_KEYS if k in flat}
    password = {dest: flat.pop(src) for src, dest in _PASSWORD_KEYS.items() if src in flat}
    if "extra_packages" in flat:
        flat["extra_packages"] = tuple(split_packages(flat["extra_packages"]))
    if flat.get("kernel_config") is not None:
        flat["kernel_config"] = Path(flat["kernel_config"]).expanduser()
    if flat.get("cache_dir") is not None:
        flat["cache_dir"] = Path(flat["cache_dir"]).expanduser()

    data: dict[str, Any] = {**flat, "features": features, "password": password}
    try:
        return BuildConfig.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(
            f"Invalid build configuration: {errors}",
            remediation="Check the flags, environment variables and build.yml.",
        ) from e


def to_flat(config: BuildConfig) -> dict[str, Any]:
    """Flat, YAML-friendly view of a config (password excluded)."""
    flat: dict[str, Any] = dict(config.features.model_dump())
    flat.update(
        compression_tool=config.compression_tool,
        jobs=config.jobs,
        use_swap=config.use_swap,
        use_cache=config.use_cache,
        cache_dir=str(config.cache_dir),
        keep_ccache=config.keep_ccache,
        kernel_config=str(config.kernel_config) if config.kernel_config else None,
        interactive_config=config.interactive_config,
        make_verbose=config.make_verbose,
        extra_packages=list(config.extra_packages),
        password_mode=config.password.mode,
        password_length=config.password.length,
        alpine_version=config.alpine_version,
        kernel_version=config.kernel_version,
        zfs_version=config.zfs_version,
    )
    return flat


def save_config(config: BuildConfig, path: Path) -> None:
    """Write the flag set to ``build.yml`` for replay."""
    flat = {k: v for k, v in to_flat(config).items() if v is not None}
    if flat["password_mode"] == "custom":
        # The password itself is never written, so a replay generates one
        flat["password_mode"] = "random"
    header = "# OneRecovery build configuration (last saved flag set)\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        header + yaml.safe_dump(flat, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    logger.info("Build configuration saved to %s", path)


def _known_keys() -> set[str]:
    keys = set(FEATURE_KEYS) | set(_PASSWORD_KEYS)
    keys |= set(BuildConfig.model_fields) - {"features", "password"}
    return keys


__all__ = [
    "CONFIG_FILE",
    "build_config",
    "default_config_path",
    "load_saved",
    "overrides_from_env",
    "parse_bool",
    "preset_overrides",
    "save_config",
    "to_flat",
]
