"""
Kernel config overlay merger.

A merge is a left fold: start from the base config verbatim, then for
each enabled feature (in the fixed ``KERNEL_FEATURES`` order) apply the
option lines of its patch. The key of a line is the text before ``=``,
or ``CONFIG_X`` for ``# CONFIG_X is not set``; a later line for a key
replaces every earlier line for it, whichever form either takes. A
normalization pass (``make olddefconfig``) then fills in defaults.

Layout under the config directory:

    minimal.config / standard.config      base configurations
    features/<feature>-support.conf       one patch per feature
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.errors import ConfigurationError
from onerecovery.core.models.features import KERNEL_FEATURES, FeatureSet

logger = logging.getLogger(__name__)

_NOT_SET = re.compile(r"^#\s*(CONFIG_[A-Za-z0-9_]+) is not set\s*$")

MINIMAL_BASE = "minimal.config"
STANDARD_BASE = "standard.config"
FEATURES_DIR = "features"

# Kernel configs may carry non-UTF-8 bytes in string options; keep them as-is
CONFIG_ERRORS = "surrogateescape"

Normalizer = Callable[[Path], None]


def option_key(line: str) -> str | None:
    """The option a config line sets, or None for comments and blanks."""
    text = line.strip()
    if not text:
        return None
    m = _NOT_SET.match(text)
    if m:
        return m.group(1)
    if text.startswith("#") or "=" not in text:
        return None
    return text.split("=", 1)[0].strip()


class KernelConfig:
    """An ordered kernel configuration with last-writer-wins updates."""

    def __init__(self, lines: Iterable[str] = ()) -> None:
        self._lines: list[str | None] = []
        self._index: dict[str, int] = {}
        for line in lines:
            self._append(line.rstrip("\n"))

    @classmethod
    def from_file(cls, path: Path) -> KernelConfig:
        return cls(path.read_text(encoding="utf-8", errors=CONFIG_ERRORS).splitlines())

    def apply(self, lines: Iterable[str]) -> tuple[int, int]:
        """Apply patch lines; returns (added, modified) option counts."""
        added = modified = 0
        for raw in lines:
            line = raw.strip()
            key = option_key(line)
            if key is None:
                continue        # patch comments and blank lines are not carried over
            if key in self._index:
                modified += 1
            else:
                added += 1
            self._append(line)
        return added, modified

    def get(self, key: str) -> str | None:
        """Option value: the text after ``=``, ``n`` when not set, None if absent."""
        i = self._index.get(key)
        if i is None:
            return None
        line = self._lines[i] or ""
        if _NOT_SET.match(line.strip()):
            return "n"
        return line.split("=", 1)[1].strip()

    def options(self) -> dict[str, str]:
        return {key: self.get(key) or "" for key in self._index}

    def render(self) -> str:
        return "\n".join(line for line in self._lines if line is not None) + "\n"

    def _append(self, line: str) -> None:
        key = option_key(line)
        if key is not None and key in self._index:
            self._lines[self._index[key]] = None
        self._lines.append(line)
        if key is not None:
            self._index[key] = len(self._lines) - 1


class ConfigOverlay(BaseModel):
    """Base config plus the ordered feature patches that may apply to it."""

    model_config = ConfigDict(frozen=True)

    base: Path
    features: list[tuple[str, Path]] = Field(default_factory=list)


@dataclass
class MergeReport:
    """What a merge did."""

    output: Path
    base: Path
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    added: int = 0
    modified: int = 0
    normalized: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "output": str(self.output),
            "base": str(self.base),
            "applied": self.applied,
            "skipped": self.skipped,
            "added": self.added,
            "modified": self.modified,
            "normalized": self.normalized,
        }


def patch_path(config_dir: Path, feature: str) -> Path:
    return config_dir / FEATURES_DIR / f"{feature.replace('_', '-')}-support.conf"


def build_overlay(
    config_dir: Path,
    features: FeatureSet,
    custom_base: Path | None = None,
) -> ConfigOverlay:
    """Overlay for a feature set: the right base plus every known patch."""
    if custom_base is not None:
        base = custom_base
    else:
        base = config_dir / (MINIMAL_BASE if features.minimal_kernel else STANDARD_BASE)
    return ConfigOverlay(
        base=base,
        features=[(name, patch_path(config_dir, name)) for name in KERNEL_FEATURES],
    )


def merge_overlay(
    overlay: ConfigOverlay,
    enabled: Iterable[str],
    output: Path,
    *,
    required: Iterable[str] = (),
    normalizer: Normalizer | None = None,
) -> MergeReport:
    """Resolve ``overlay`` for the ``enabled`` features into ``output``.

    Raises:
        ConfigurationError: base config missing, or a required feature's
            patch missing.
    """
    enabled_set = set(enabled)
    required_set = set(required)

    if not overlay.base.is_file():
        raise ConfigurationError(
            f"Base kernel config not found: {overlay.base}",
            remediation="Provide kernel-configs/ in the working directory or pass --kernel-config.",
        )

    config = KernelConfig.from_file(overlay.base)
    report = MergeReport(output=output, base=overlay.base)

    for name, patch in overlay.features:
        if name not in enabled_set:
            continue
        if not patch.is_file():
            if name in required_set:
                raise ConfigurationError(
                    f"Required kernel config patch for '{name}' not found: {patch}",
                    remediation=f"Restore {patch} or disable the feature.",
                )
            logger.warning("Kernel config patch for '%s' not found at %s, skipping", name, patch)
            report.skipped.append(name)
            continue

        added, modified = config.apply(patch.read_text(encoding="utf-8", errors=CONFIG_ERRORS).splitlines())
        report.applied.append(name)
        report.added += added
        report.modified += modified
        logger.info("Applied %s overlay: %d added, %d modified", name, added, modified)

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(config.render(), encoding="utf-8", errors=CONFIG_ERRORS)

    if normalizer is not None:
        normalizer(output)
        report.normalized = True

    logger.info(
        "Kernel config resolved to %s (%d feature(s), %d added, %d modified)",
        output, len(report.applied), report.added, report.modified,
    )
    return report


def olddefconfig_normalizer(runner: CommandRunner, kernel_dir: Path) -> Normalizer:
    """Normalizer running ``make olddefconfig`` in the kernel tree."""

    def normalize(config_path: Path) -> None:
        dest = kernel_dir / ".config"
        if config_path.resolve() != dest.resolve():
            dest.write_bytes(config_path.read_bytes())
        runner.check(
            ["make", "olddefconfig"],
            cwd=kernel_dir,
            what="make olddefconfig",
            remediation="Check the merged kernel config for invalid options.",
        )
        if config_path.resolve() != dest.resolve():
            config_path.write_bytes(dest.read_bytes())

    return normalize


def missing_options(path: Path, wanted: Mapping[str, str]) -> list[str]:
    """Options from ``wanted`` whose value in ``path`` differs."""
    config = KernelConfig.from_file(path)
    return [key for key, value in wanted.items() if config.get(key) != value]
