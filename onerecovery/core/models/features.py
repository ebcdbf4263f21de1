"""
Feature models — optional components toggled per build.

Each feature has one CLI toggle (``--with-X/--without-X``) and one
environment variable (``INCLUDE_X``). ``KERNEL_FEATURES`` fixes the
order in which kernel-config overlays are applied.
"""

from __future__ import annotations

from typing import NamedTuple

from pydantic import BaseModel, ConfigDict


class FeatureSpec(NamedTuple):
    field: str       # FeatureSet attribute
    flag: str        # CLI suffix: --with-<flag>
    env: str         # environment variable
    help: str


FEATURES: tuple[FeatureSpec, ...] = (
    FeatureSpec("zfs", "zfs", "INCLUDE_ZFS", "OpenZFS kernel modules and tools"),
    FeatureSpec("btrfs", "btrfs", "INCLUDE_BTRFS", "Btrfs filesystem support"),
    FeatureSpec("recovery_tools", "recovery-tools", "INCLUDE_RECOVERY_TOOLS", "Data recovery tools"),
    FeatureSpec("network_tools", "network-tools", "INCLUDE_NETWORK_TOOLS", "Network tools"),
    FeatureSpec("crypto", "crypto", "INCLUDE_CRYPTO", "Encryption support (LUKS, LVM, mdadm)"),
    FeatureSpec("tui", "tui", "INCLUDE_TUI", "Text user interface"),
    FeatureSpec("compression", "compression", "INCLUDE_COMPRESSION", "Compress the final image"),
    FeatureSpec("advanced_fs", "advanced-fs", "INCLUDE_ADVANCED_FS", "Advanced filesystem tools"),
    FeatureSpec("disk_diag", "disk-diag", "INCLUDE_DISK_DIAG", "Disk and hardware diagnostics"),
    FeatureSpec("network_diag", "network-diag", "INCLUDE_NETWORK_DIAG", "Network diagnostics and VPN"),
    FeatureSpec("system_tools", "system-tools", "INCLUDE_SYSTEM_TOOLS", "Advanced system utilities"),
    FeatureSpec("data_recovery", "data-recovery", "INCLUDE_DATA_RECOVERY", "Advanced data recovery"),
    FeatureSpec("boot_repair", "boot-repair", "INCLUDE_BOOT_REPAIR", "Boot repair utilities"),
    FeatureSpec("editors", "editors", "INCLUDE_EDITORS", "Advanced text editors"),
    FeatureSpec("security", "security", "INCLUDE_SECURITY", "Security tools"),
)

ADVANCED_GROUPS: tuple[str, ...] = (
    "advanced_fs",
    "disk_diag",
    "network_diag",
    "system_tools",
    "data_recovery",
    "boot_repair",
    "editors",
    "security",
)

# Disabled by --minimal
MINIMAL_DISABLES: tuple[str, ...] = (
    "zfs",
    "btrfs",
    "recovery_tools",
    "network_tools",
    "crypto",
    "tui",
)

# Features with a kernel-config overlay, in application order.
# Later overlays win on conflicting options.
KERNEL_FEATURES: tuple[str, ...] = (
    "zfs",
    "btrfs",
    "crypto",
    "network_tools",
    "recovery_tools",
    "tui",
)


class FeatureSet(BaseModel):
    """Which optional components go into the image."""

    model_config = ConfigDict(frozen=True)

    zfs: bool = True
    btrfs: bool = False
    recovery_tools: bool = True
    network_tools: bool = True
    crypto: bool = True
    tui: bool = True
    compression: bool = True
    advanced_fs: bool = False
    disk_diag: bool = False
    network_diag: bool = False
    system_tools: bool = False
    data_recovery: bool = False
    boot_repair: bool = False
    editors: bool = False
    security: bool = False
    minimal_kernel: bool = False

    def enabled(self) -> list[str]:
        """Names of enabled features, in declaration order."""
        return [spec.field for spec in FEATURES if getattr(self, spec.field)]
