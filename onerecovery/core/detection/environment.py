"""
Environment classifier — container, CI and privilege detection.

Read-only probes of the host: a couple of environment markers, the
container marker files, ``/proc/1/cgroup`` and the presence of the
``sudo`` binary. This is the only module that reads environment
markers; everything else receives the resulting ``EnvironmentProfile``.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping
from pathlib import Path

from onerecovery.core.models.environment import EnvironmentProfile

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

_CGROUP_MARKERS = ("docker", "container", "kubepods", "containerd", "lxc")
_MARKER_FILES = (".dockerenv", "run/.containerenv")


def classify(
    environ: Mapping[str, str] | None = None,
    root: Path | str = "/",
) -> EnvironmentProfile:
    """Classify the current host.

    Never fails: anything that cannot be read counts as absent, which
    yields "host, no elevated access assumed".

    Args:
        environ: Environment mapping (default: ``os.environ``).
        root: Filesystem root to probe (tests point this at tmp_path).
    """
    env = os.environ if environ is None else environ
    root = Path(root)

    profile = EnvironmentProfile(
        is_container=_detect_container(env, root),
        is_ci=_detect_ci(env),
        has_sudo=shutil.which("sudo") is not None,
        uid=_safe_id(os.getuid),
        gid=_safe_id(os.getgid),
    )
    logger.debug(
        "Environment: kind=%s container=%s ci=%s sudo=%s uid=%d",
        profile.kind.value,
        profile.is_container,
        profile.is_ci,
        profile.has_sudo,
        profile.uid,
    )
    return profile


# ── Container detection ─────────────────────────────────────────


def _detect_container(env: Mapping[str, str], root: Path) -> bool:
    override = env.get("IN_DOCKER_CONTAINER", "").strip().lower()
    if override in _TRUTHY:
        return True
    if override in _FALSY:
        return False

    for marker in _MARKER_FILES:
        if (root / marker).exists():
            return True

    return _cgroup_says_container(root / "proc" / "1" / "cgroup")


def _cgroup_says_container(path: Path) -> bool:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return any(marker in content for marker in _CGROUP_MARKERS)


# ── CI detection ────────────────────────────────────────────────


def _detect_ci(env: Mapping[str, str]) -> bool:
    if env.get("GITHUB_ACTIONS", "").strip().lower() in _TRUTHY:
        return True
    return env.get("CI", "").strip().lower() in _TRUTHY


def _safe_id(getter) -> int:
    try:
        return getter()
    except (AttributeError, OSError):
        return -1
