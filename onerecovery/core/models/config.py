"""
Build configuration model — the one immutable config for a run.

Built once by ``onerecovery.core.config.loader`` from defaults, the
saved ``build.yml``, environment variables and CLI flags, then passed
to every component. Nothing downstream reads ``os.environ``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from onerecovery.core.models.features import FeatureSet

DEFAULT_CACHE_DIR = Path.home() / ".onerecovery" / "cache"

ALPINE_VERSION = "3.21"
ALPINE_FALLBACK_PATCH = 3
KERNEL_VERSION = "6.12.19"
ZFS_VERSION = "2.3.0"
ARCH = "x86_64"


class PasswordPolicy(BaseModel):
    """How the image's root password is set."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["random", "custom", "none"] = "random"
    password: str = Field(default="", repr=False)
    length: int = Field(default=12, ge=8, le=64)


class BuildConfig(BaseModel):
    """Everything a pipeline run needs to know about the user's intent."""

    model_config = ConfigDict(frozen=True)

    features: FeatureSet = Field(default_factory=FeatureSet)
    compression_tool: Literal["upx", "xz", "zstd"] = "upx"

    # ── Resources ───────────────────────────────────────────────
    jobs: int | None = Field(default=None, ge=1)
    use_swap: bool = False
    use_cache: bool = True
    cache_dir: Path = DEFAULT_CACHE_DIR
    keep_ccache: bool = False

    # ── Kernel ──────────────────────────────────────────────────
    kernel_config: Path | None = None
    interactive_config: bool = False
    make_verbose: bool = False

    # ── Image content ───────────────────────────────────────────
    extra_packages: tuple[str, ...] = ()
    password: PasswordPolicy = Field(default_factory=PasswordPolicy)

    # ── Upstream versions ───────────────────────────────────────
    alpine_version: str = ALPINE_VERSION
    alpine_fallback_patch: int = ALPINE_FALLBACK_PATCH
    kernel_version: str = KERNEL_VERSION
    zfs_version: str = ZFS_VERSION
    arch: str = ARCH

    force_cleanup: bool = False
