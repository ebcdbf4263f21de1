"""
Upstream sources — URLs, the latest-release probe, and downloads.

The Alpine probe is the pipeline's only timed network call: it reads the
Alpine downloads page with a short timeout and falls back to a
hard-coded patch release on any failure.
"""

from __future__ import annotations

import logging
import re
import shutil
import urllib.error
import urllib.request
from pathlib import Path

from onerecovery import __version__
from onerecovery.core.errors import NetworkError
from onerecovery.core.models.cache import SourceComponent
from onerecovery.core.models.config import BuildConfig

logger = logging.getLogger(__name__)

ALPINE_DOWNLOADS_PAGE = "https://alpinelinux.org/downloads/"
PROBE_TIMEOUT = 5
DOWNLOAD_TIMEOUT = 60
_USER_AGENT = f"onerecovery/{__version__}"

ALPINE_URL = (
    "https://dl-cdn.alpinelinux.org/alpine/v{series}/releases/{arch}/"
    "alpine-minirootfs-{version}-{arch}.tar.gz"
)
KERNEL_URL = "https://cdn.kernel.org/pub/linux/kernel/v{major}.x/linux-{version}.tar.xz"
ZFS_URL = "https://github.com/openzfs/zfs/releases/download/zfs-{version}/zfs-{version}.tar.gz"

ROOTFS_DIR = "alpine-minirootfs"
KERNEL_DIR = "linux"
ZFS_DIR = "zfs"


def latest_alpine_version(
    series: str,
    fallback_patch: int,
    *,
    timeout: float = PROBE_TIMEOUT,
    arch: str = "x86_64",
) -> str:
    """Newest ``<series>.<patch>`` advertised on the Alpine downloads page."""
    fallback = f"{series}.{fallback_patch}"
    pattern = re.compile(
        rf"alpine-minirootfs-{re.escape(series)}\.(\d+)-{re.escape(arch)}\.tar\.gz"
    )
    try:
        req = urllib.request.Request(ALPINE_DOWNLOADS_PAGE, headers={"User-Agent": _USER_AGENT})
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            page = resp.read().decode("utf-8", errors="replace")
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        logger.info("Alpine version probe failed (%s); using %s", e, fallback)
        return fallback

    patches = [int(m) for m in pattern.findall(page)]
    if not patches:
        logger.info("No %s release found on downloads page; using %s", series, fallback)
        return fallback
    version = f"{series}.{max(patches)}"
    logger.info("Latest Alpine release: %s", version)
    return version


def source_components(config: BuildConfig, alpine_version: str) -> list[SourceComponent]:
    """The archives a build needs, in fetch order."""
    kernel_major = config.kernel_version.split(".", 1)[0]
    components = [
        SourceComponent(
            name="alpine",
            version=alpine_version,
            arch=config.arch,
            url=ALPINE_URL.format(
                series=config.alpine_version, arch=config.arch, version=alpine_version,
            ),
            target_dir=ROOTFS_DIR,
        ),
        SourceComponent(
            name="kernel",
            version=config.kernel_version,
            arch=config.arch,
            url=KERNEL_URL.format(major=kernel_major, version=config.kernel_version),
            target_dir=KERNEL_DIR,
            strip_components=1,
        ),
    ]
    if config.features.zfs:
        components.append(
            SourceComponent(
                name="zfs",
                version=config.zfs_version,
                arch=config.arch,
                url=ZFS_URL.format(version=config.zfs_version),
                target_dir=ZFS_DIR,
                strip_components=1,
            )
        )
    return components


def download(url: str, dest: Path, *, timeout: float = DOWNLOAD_TIMEOUT) -> None:
    """Download ``url`` to ``dest`` via a ``.part`` file.

    Raises:
        NetworkError: on any transfer failure (never retried here).
    """
    partial = dest.with_name(dest.name + ".part")
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        req = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
        with urllib.request.urlopen(req, timeout=timeout) as resp, open(partial, "wb") as out:
            shutil.copyfileobj(resp, out, length=1024 * 1024)
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        partial.unlink(missing_ok=True)
        raise NetworkError(
            f"Download failed: {url}: {e}",
            remediation="Check network connectivity or proxy settings, then re-run with --resume.",
        ) from e

    if partial.stat().st_size == 0:
        partial.unlink(missing_ok=True)
        raise NetworkError(
            f"Download of {url} produced an empty file",
            remediation="The mirror may be unavailable; re-run with --resume later.",
        )
    partial.rename(dest)
    logger.info("Downloaded %s (%.1f MB)", dest.name, dest.stat().st_size / 1e6)
