"""
Cache manager — keep downloads and compiled objects across runs.

Layout under the cache root:

    sources/     downloaded archives, keyed by URL basename (+ index.json)
    ccache/      compiler cache (managed by the external ccache tool)
    packages/    reserved for Alpine package caching
    build/       pre-extracted source trees

Default root is ``~/.onerecovery/cache`` (``CACHE_DIR`` / ``--cache-dir``).
"""

from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from onerecovery.adapters.shell.command import CommandRunner
from onerecovery.core.models.cache import CacheEntry, SourceComponent

logger = logging.getLogger(__name__)

SUBDIRS = ("sources", "ccache", "packages", "build")
CCACHE_MAX_SIZE = "5G"
_INDEX = "index.json"

Fetcher = Callable[[str, Path], None]


@dataclass
class CompilerCache:
    """Handle on a configured ccache directory."""

    directory: Path
    runner: CommandRunner

    @property
    def env(self) -> dict[str, str]:
        return {
            "CCACHE_DIR": str(self.directory),
            "CCACHE_MAXSIZE": CCACHE_MAX_SIZE,
            "CCACHE_COMPRESS": "1",
        }

    @property
    def make_vars(self) -> list[str]:
        return ["CC=ccache gcc", "HOSTCC=ccache gcc"]

    def stats(self) -> dict[str, str]:
        """Parse ``ccache -s`` into a flat mapping (empty if unavailable)."""
        result = self.runner.run(["ccache", "-s"], env=self.env)
        if not result.ok:
            return {}
        stats: dict[str, str] = {}
        for line in result.stdout.splitlines():
            if ":" in line:
                key, value = line.split(":", 1)
                if key.strip() and value.strip():
                    stats[key.strip().lower()] = value.strip()
        return stats


class CacheManager:
    """Source, package and compiler caches rooted at one directory.

    Args:
        root: Cache root directory.
        enabled: When False every lookup misses and nothing is stored.
        runner: Command runner for the ccache tool.
    """

    def __init__(
        self,
        root: Path,
        *,
        enabled: bool = True,
        runner: CommandRunner | None = None,
    ) -> None:
        self.root = root
        self.enabled = enabled
        self.runner = runner or CommandRunner()

    @property
    def sources_dir(self) -> Path:
        return self.root / "sources"

    @property
    def ccache_dir(self) -> Path:
        return self.root / "ccache"

    @property
    def packages_dir(self) -> Path:
        return self.root / "packages"

    @property
    def build_dir(self) -> Path:
        return self.root / "build"

    def setup(self) -> None:
        """Create the cache tree."""
        if not self.enabled:
            return
        for name in SUBDIRS:
            (self.root / name).mkdir(parents=True, exist_ok=True)
        logger.info("Cache directory: %s", self.root)

    # ── Sources ─────────────────────────────────────────────────

    def get_or_fetch(
        self,
        component: SourceComponent,
        dest_dir: Path,
        fetch: Fetcher,
    ) -> Path:
        """Return the component's archive in ``dest_dir``, downloading on a miss.

        Args:
            component: What to fetch.
            dest_dir: Working directory receiving the archive.
            fetch: ``fetch(url, dest)`` downloads one URL to one path.
        """
        filename = component.filename
        dest = dest_dir / filename
        dest_dir.mkdir(parents=True, exist_ok=True)

        if dest.is_file() and dest.stat().st_size > 0:
            logger.info("%s already present in working directory", filename)
            self._store(component, dest)
            return dest

        cached = self.sources_dir / filename
        if self.enabled and cached.is_file() and cached.stat().st_size > 0:
            logger.info("Cache hit: %s", filename)
            shutil.copy2(cached, dest)
            return dest

        logger.info("Cache miss: downloading %s", component.url)
        fetch(component.url, dest)
        self._store(component, dest)
        return dest

    def entries(self) -> list[CacheEntry]:
        """Cached source archives that are still on disk."""
        index = self._load_index()
        found: list[CacheEntry] = []
        for filename, meta in sorted(index.items()):
            path = self.sources_dir / filename
            if path.is_file():
                found.append(CacheEntry(path=path, **meta))
        return found

    def _store(self, component: SourceComponent, path: Path) -> None:
        if not self.enabled:
            return
        cached = self.sources_dir / component.filename
        try:
            self.sources_dir.mkdir(parents=True, exist_ok=True)
            if not cached.is_file():
                shutil.copy2(path, cached)
                logger.info("Cached %s", component.filename)
            index = self._load_index()
            index.setdefault(component.filename, CacheEntry(
                component=component.name,
                version=component.version,
                arch=component.arch,
                path=cached,
            ).model_dump(mode="json", exclude={"path"}))
            (self.sources_dir / _INDEX).write_text(json.dumps(index, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning("Could not cache %s: %s", component.filename, e)

    def _load_index(self) -> dict[str, dict[str, str]]:
        path = self.sources_dir / _INDEX
        if not path.is_file():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable cache index %s: %s", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    # ── Pre-extracted trees ─────────────────────────────────────

    def extracted_copy(self, archive_name: str) -> Path | None:
        """Path of a complete pre-extracted tree for ``archive_name``."""
        if not self.enabled:
            return None
        tree = self.build_dir / archive_name
        if tree.is_dir() and (self.build_dir / f".{archive_name}.complete").is_file():
            return tree
        return None

    def store_extracted(self, archive_name: str, tree: Path) -> None:
        if not self.enabled or self.extracted_copy(archive_name) is not None:
            return
        dest = self.build_dir / archive_name
        staging = self.build_dir / f".{archive_name}.tmp"
        try:
            shutil.rmtree(staging, ignore_errors=True)
            shutil.copytree(tree, staging, symlinks=True)
            shutil.rmtree(dest, ignore_errors=True)
            staging.rename(dest)
            (self.build_dir / f".{archive_name}.complete").touch()
            logger.info("Stored extracted copy of %s", archive_name)
        except (OSError, shutil.Error) as e:
            shutil.rmtree(staging, ignore_errors=True)
            logger.warning("Could not store extracted copy of %s: %s", archive_name, e)

    # ── Compiler cache ──────────────────────────────────────────

    def put_compiler_cache(self, directory: Path | None = None) -> CompilerCache | None:
        """Configure ccache in ``directory`` (default: ``<root>/ccache``).

        Returns None when caching is disabled or ccache is not installed.
        """
        if not self.enabled:
            return None
        if not self.runner.has("ccache"):
            logger.warning("ccache not installed, building without compiler cache")
            return None

        handle = CompilerCache(directory=directory or self.ccache_dir, runner=self.runner)
        handle.directory.mkdir(parents=True, exist_ok=True)
        for cmd in (["ccache", "-M", CCACHE_MAX_SIZE], ["ccache", "-z"]):
            result = self.runner.run(cmd, env=handle.env)
            if not result.ok:
                logger.warning("%s failed: %s", " ".join(cmd), result.describe())
        logger.info("Compiler cache at %s (max %s)", handle.directory, CCACHE_MAX_SIZE)
        return handle

    def clear_compiler_cache(self) -> None:
        if not self.ccache_dir.is_dir() or not self.runner.has("ccache"):
            return
        result = self.runner.run(["ccache", "-C"], env={"CCACHE_DIR": str(self.ccache_dir)})
        if not result.ok:
            logger.warning("Could not clear compiler cache: %s", result.describe())
