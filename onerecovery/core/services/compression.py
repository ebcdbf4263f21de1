"""
Image compression.

Only UPX produces an image that still boots (a self-extracting EFI
binary), so it is the only tool that rewrites the artifact. ``xz`` and
``zstd`` are accepted for compatibility with older configs; they leave
the image uncompressed and say so.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from onerecovery.adapters.shell.command import CommandRunner

logger = logging.getLogger(__name__)


def compress_image(image: Path, tool: str, runner: CommandRunner) -> bool:
    """Compress ``image`` in place. Returns True if the file was rewritten.

    On any UPX failure the original file is restored.
    """
    if tool != "upx":
        logger.warning(
            "Compression tool '%s' does not produce a bootable image; keeping %s uncompressed",
            tool, image.name,
        )
        return False

    if not runner.has("upx"):
        logger.warning("UPX not found; keeping %s uncompressed (install upx-ucl)", image.name)
        return False

    backup = image.with_name(image.name + ".original")
    shutil.copy2(image, backup)
    before = image.stat().st_size
    try:
        result = runner.run(["upx", "--best", "--lzma", str(image)])
        if not result.ok:
            logger.error("UPX compression failed (%s); restoring original", result.describe())
            shutil.copy2(backup, image)
            return False
    finally:
        backup.unlink(missing_ok=True)

    after = image.stat().st_size
    if before:
        logger.info("Compressed %s: %.1f MB → %.1f MB (%.0f%%)",
                    image.name, before / 1e6, after / 1e6, 100 * after / before)
    return True
