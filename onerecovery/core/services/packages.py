"""
Alpine package selection and the in-chroot install script.
"""

from __future__ import annotations

from onerecovery.core.models.config import BuildConfig

BASE_PACKAGES = (
    "openrc", "nano", "mc", "bash", "parted", "dropbear", "dropbear-ssh", "efibootmgr",
    "e2fsprogs", "e2fsprogs-extra", "dosfstools", "dmraid", "fuse", "gawk", "grep",
    "sed", "util-linux", "wget",
)

FEATURE_PACKAGES: dict[str, tuple[str, ...]] = {
    "zfs": ("zfs", "util-linux-dev", "util-linux-misc", "util-linux", "util-linux-bash-completion"),
    "btrfs": ("btrfs-progs",),
    "recovery_tools": ("testdisk", "ddrescue", "rsync", "unzip", "tar"),
    "network_tools": ("curl", "rsync", "iperf3", "tcpdump", "nftables"),
    "crypto": ("cryptsetup", "lvm2", "mdadm"),
    "tui": ("ncurses-terminfo-base", "less"),
    "advanced_fs": ("ntfs-3g", "xfsprogs", "gptfdisk", "exfatprogs", "f2fs-tools"),
    "disk_diag": ("smartmontools", "hdparm", "nvme-cli", "dmidecode", "lshw"),
    "network_diag": ("ethtool", "nmap", "wireguard-tools", "openvpn"),
    "system_tools": ("htop", "strace", "pciutils", "usbutils"),
    "data_recovery": ("testdisk",),
    "boot_repair": ("grub",),
    "editors": ("vim", "tmux", "jq"),
    "security": ("openssl",),
}

HOSTNAME = "onerecovery"


def package_list(config: BuildConfig) -> list[str]:
    """Packages for the image: base, enabled feature groups, extras. Deduplicated, ordered."""
    selected: list[str] = list(BASE_PACKAGES)
    for feature in config.features.enabled():
        selected.extend(FEATURE_PACKAGES.get(feature, ()))
    selected.extend(config.extra_packages)

    seen: set[str] = set()
    unique: list[str] = []
    for pkg in selected:
        if pkg and pkg not in seen:
            seen.add(pkg)
            unique.append(pkg)
    return unique


def install_script(packages: list[str], alpine_series: str) -> str:
    """The ash script run inside the chroot to install ``packages``."""
    pkgs = " ".join(packages)
    return f"""#!/bin/ash
set -e

echo "[INFO] Setting hostname"
echo {HOSTNAME} > /etc/hostname && hostname -F /etc/hostname || true
echo 127.0.1.1 {HOSTNAME} {HOSTNAME} >> /etc/hosts

echo "[INFO] Configuring repositories"
cat > /etc/apk/repositories << REPOS
http://dl-cdn.alpinelinux.org/alpine/v{alpine_series}/main
http://dl-cdn.alpinelinux.org/alpine/v{alpine_series}/community
http://dl-cdn.alpinelinux.org/alpine/edge/testing
REPOS
apk update

echo "[INFO] Upgrading installed packages"
apk upgrade

echo "[INFO] Installing required packages"
if ! apk add {pkgs}; then
    echo "[ERROR] Failed to install some packages - checking which ones are problematic"
    for pkg in {pkgs}; do
        apk add "$pkg" || echo "[ERROR] Problem package: $pkg is not available"
    done
    exit 1
fi

echo "[INFO] Cleaning package cache"
rm -rf /var/cache/apk/*

echo "[INFO] Installation completed successfully"
exit 0
"""
