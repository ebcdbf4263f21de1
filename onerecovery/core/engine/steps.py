"""
Pipeline steps — what each stage of the build actually does.

Each step is a plain function taking the ``BuildContext``. Steps raise
``BuildError`` subclasses on failure and never touch the checkpoint;
the executor commits progress after a step returns.

    prepare    host toolchain, cache tree, stale swap
    fetch      Alpine probe, downloads (cached), extraction
    install    Alpine packages inside the chroot
    configure  services, zfiles, console, password, kernel .config
    build      kernel, modules, ZFS, depmod, EFI artifact, compression
    cleanup    remove trees, archives, markers, swap, password file
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from onerecovery.core.engine.context import BuildContext
from onerecovery.core.errors import (
    BuildError,
    CommandError,
    ConfigurationError,
    ResourceExhaustionError,
)
from onerecovery.core.kconfig.overlay import (
    build_overlay,
    merge_overlay,
    missing_options,
    olddefconfig_normalizer,
)
from onerecovery.core.models.pipeline import Step
from onerecovery.core.models.resources import ResourcePlan
from onerecovery.core.services.compression import compress_image
from onerecovery.core.services.downloads import (
    download,
    latest_alpine_version,
    source_components,
)
from onerecovery.core.services.failure_analysis import analyse_build_output
from onerecovery.core.services.host_setup import check_resources, install_build_dependencies
from onerecovery.core.services.packages import install_script, package_list
from onerecovery.core.services.passwords import apply_password_policy
from onerecovery.core.services.rootfs import configure_inittab, install_zfiles, link_services

logger = logging.getLogger(__name__)

StepAction = Callable[[BuildContext], None]
SatisfiedCheck = Callable[[BuildContext], bool]

INSTALL_SCRIPT = "mk.sh"
BZIMAGE = Path("arch") / "x86" / "boot" / "bzImage"
ARCHIVE_PATTERNS = ("alpine-minirootfs-*.tar.gz", "linux-*.tar.xz", "zfs-*.tar.gz", "*.part")

# Kernel options the out-of-tree ZFS module cannot build without.
ZFS_KERNEL_OPTIONS = {
    "CONFIG_MODULES": "y",
    "CONFIG_ZLIB_DEFLATE": "y",
    "CONFIG_ZLIB_INFLATE": "y",
}


@dataclass(frozen=True)
class PipelineStep:
    """One executable stage: the action plus an optional idempotency check."""

    step: Step
    action: StepAction
    description: str = ""
    satisfied: SatisfiedCheck | None = None


# ── prepare ─────────────────────────────────────────────────────


def prepare(ctx: BuildContext) -> None:
    check_resources(ctx.layout.workdir)
    install_build_dependencies(ctx.runner, ctx.profile)
    ctx.layout.output.mkdir(parents=True, exist_ok=True)
    ctx.cache.setup()
    ctx.planner.remove_stale_swap()


# ── fetch ───────────────────────────────────────────────────────


def fetch(ctx: BuildContext) -> None:
    config = ctx.config
    ctx.alpine_version = latest_alpine_version(
        config.alpine_version, config.alpine_fallback_patch, arch=config.arch,
    )
    workdir = ctx.layout.workdir
    for component in source_components(config, ctx.alpine_version):
        archive = ctx.cache.get_or_fetch(component, workdir, download)
        ctx.extractor.extract(
            archive,
            workdir / component.target_dir,
            strip_components=component.strip_components,
            kernel=component.name == "kernel",
        )


def sources_extracted(ctx: BuildContext) -> bool:
    targets = [ctx.layout.rootfs, ctx.layout.kernel]
    if ctx.config.features.zfs:
        targets.append(ctx.layout.zfs)
    return all(ctx.extractor.is_extracted(t) for t in targets)


# ── install ─────────────────────────────────────────────────────


def install(ctx: BuildContext) -> None:
    rootfs = ctx.layout.rootfs
    _require_dir(rootfs, "Alpine root filesystem", Step.FETCH)

    packages = package_list(ctx.config)
    logger.info("Installing %d package(s) into the rootfs", len(packages))

    host_resolv = Path("/etc/resolv.conf")
    if host_resolv.is_file():
        (rootfs / "etc").mkdir(parents=True, exist_ok=True)
        shutil.copyfile(host_resolv, rootfs / "etc" / "resolv.conf")
    else:
        logger.warning("Host has no /etc/resolv.conf; package downloads may fail in the chroot")

    script = rootfs / INSTALL_SCRIPT
    script.write_text(install_script(packages, ctx.config.alpine_version), encoding="utf-8")
    script.chmod(0o755)
    try:
        ctx.ops.chroot(rootfs, ["/bin/ash", f"/{INSTALL_SCRIPT}"], critical=True)
    finally:
        script.unlink(missing_ok=True)

    ctx.layout.packages_marker.write_text("\n".join(packages) + "\n", encoding="utf-8")


def packages_installed(ctx: BuildContext) -> bool:
    marker = ctx.layout.packages_marker
    if not marker.is_file():
        return False
    recorded = marker.read_text(encoding="utf-8").split()
    return recorded == package_list(ctx.config)


# ── configure ───────────────────────────────────────────────────


def configure(ctx: BuildContext) -> None:
    layout, config = ctx.layout, ctx.config
    rootfs = layout.rootfs
    _require_dir(rootfs, "Alpine root filesystem", Step.FETCH)
    _require_dir(layout.kernel, "Kernel source tree", Step.FETCH)

    link_services(rootfs, ctx.ops)
    install_zfiles(layout.zfiles, rootfs)
    configure_inittab(rootfs)
    ctx.generated_password = apply_password_policy(
        config.password,
        rootfs / "etc" / "shadow",
        layout.password_file,
        ctx.runner,
    )

    overlay = build_overlay(layout.kernel_configs, config.features, config.kernel_config)
    merge_overlay(
        overlay,
        config.features.enabled(),
        layout.kernel / ".config",
        required=("zfs",) if config.features.zfs else (),
        normalizer=olddefconfig_normalizer(ctx.runner, layout.kernel),
    )

    if config.interactive_config:
        result = ctx.runner.run(["make", "menuconfig"], cwd=layout.kernel, interactive=True)
        if not result.ok:
            raise CommandError(
                f"make menuconfig failed ({result.describe()})",
                returncode=result.returncode,
                remediation="Install ncurses development headers or build without --interactive-config.",
            )


# ── build ───────────────────────────────────────────────────────


def build(ctx: BuildContext) -> None:
    layout, config = ctx.layout, ctx.config
    kernel_config = layout.kernel / ".config"
    if not kernel_config.is_file():
        raise ConfigurationError(
            f"Kernel config not found at {kernel_config}",
            remediation="Run 'onerecovery run configure' first.",
        )

    compiler_cache = None
    try:
        with ctx.planner.provisioned(ctx.profile) as plan:
            compiler_cache = ctx.cache.put_compiler_cache()
            env = compiler_cache.env if compiler_cache else {}
            make = _make_command(ctx, plan, compiler_cache.make_vars if compiler_cache else [])

            _make(ctx, make, "Kernel build", env)
            _make(ctx, make + ["modules"], "Module build", env)
            _make(
                ctx, make + ["modules_install", f"INSTALL_MOD_PATH={layout.rootfs}"],
                "Module install", env,
            )
            if config.features.zfs:
                _build_zfs(ctx, plan, env)

            release = _kernel_release(ctx)
            ctx.runner.check(
                ["depmod", "-b", str(layout.rootfs), "-F", str(layout.kernel / "System.map"), release],
                what="depmod",
                remediation="Check that modules were installed into the rootfs.",
            )
            # Rebuild so the initramfs embeds the freshly installed modules.
            _make(ctx, make, "Final kernel build", env)

            if compiler_cache is not None:
                for key, value in compiler_cache.stats().items():
                    logger.debug("ccache %s: %s", key, value)
    finally:
        if compiler_cache is not None and not config.keep_ccache:
            ctx.cache.clear_compiler_cache()

    bzimage = layout.kernel / BZIMAGE
    if not bzimage.is_file():
        raise BuildError(
            f"Kernel image not found at {bzimage}",
            remediation="Check the kernel build output, then re-run 'onerecovery run build'.",
        )
    layout.output.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(bzimage, layout.artifact)

    if config.features.compression:
        compress_image(layout.artifact, config.compression_tool, ctx.runner)
    logger.info(
        "Built %s (%.1f MB)", layout.artifact, layout.artifact.stat().st_size / 1e6,
    )


def _make_command(ctx: BuildContext, plan: ResourcePlan, extra: list[str]) -> list[str]:
    cmd = ["make", f"-j{plan.thread_count}", f"KCFLAGS={plan.compiler_flags}", *extra]
    if ctx.config.make_verbose:
        cmd.append("V=1")
    return cmd


def _make(
    ctx: BuildContext,
    cmd: list[str],
    what: str,
    env: dict[str, str],
    cwd: Path | None = None,
) -> None:
    try:
        ctx.runner.check(
            cmd,
            cwd=cwd or ctx.layout.kernel,
            env=env,
            stream=True,
            what=what,
            remediation="Inspect the build output above, then re-run 'onerecovery run build --resume'.",
        )
    except CommandError as e:
        diagnosis = analyse_build_output(e.output)
        if diagnosis is None:
            raise
        raise ResourceExhaustionError(
            f"{what} failed: {diagnosis.cause}",
            remediation=diagnosis.suggestion,
        ) from e


def _build_zfs(ctx: BuildContext, plan: ResourcePlan, env: dict[str, str]) -> None:
    layout = ctx.layout
    _require_dir(layout.zfs, "ZFS source tree", Step.FETCH)

    missing = missing_options(layout.kernel / ".config", ZFS_KERNEL_OPTIONS)
    if missing:
        raise ConfigurationError(
            f"Kernel config lacks options ZFS needs: {', '.join(missing)}",
            remediation="Re-run 'onerecovery run configure' with ZFS enabled.",
        )

    kernel = str(layout.kernel.resolve())
    rootfs = layout.rootfs.resolve()
    logger.info("Building ZFS %s", ctx.config.zfs_version)
    _make(ctx, ["./autogen.sh"], "ZFS autogen", env, cwd=layout.zfs)
    _make(
        ctx,
        ["./configure", f"--with-linux={kernel}", f"--with-linux-obj={kernel}", "--prefix=/fake"],
        "ZFS configure", env, cwd=layout.zfs,
    )
    _make(ctx, ["make", "-C", "module", f"-j{plan.thread_count}"], "ZFS module build", env, cwd=layout.zfs)
    (rootfs / "fake").mkdir(parents=True, exist_ok=True)
    try:
        _make(
            ctx,
            ["make", f"DESTDIR={rootfs}", f"INSTALL_MOD_PATH={rootfs}", "install"],
            "ZFS install", env, cwd=layout.zfs,
        )
    finally:
        shutil.rmtree(rootfs / "fake", ignore_errors=True)


def _kernel_release(ctx: BuildContext) -> str:
    result = ctx.runner.run(["make", "-s", "kernelrelease"], cwd=ctx.layout.kernel)
    release = result.stdout.strip().splitlines()[-1] if result.ok and result.stdout.strip() else ""
    return release or ctx.config.kernel_version


# ── cleanup ─────────────────────────────────────────────────────


def cleanup(ctx: BuildContext) -> None:
    """Remove build trees and intermediate files; keep output/ and the cache."""
    layout = ctx.layout
    for tree in (layout.rootfs, layout.kernel, layout.zfs):
        ctx.extractor.clear_marker(tree)
        _remove_tree(ctx, tree)

    removed = 0
    for pattern in ARCHIVE_PATTERNS:
        for path in layout.workdir.glob(pattern):
            path.unlink(missing_ok=True)
            removed += 1
    if removed:
        logger.info("Removed %d downloaded archive(s)", removed)

    ctx.planner.remove_stale_swap()
    layout.password_file.unlink(missing_ok=True)
    logger.info("Cleanup complete (kept %s and the cache)", layout.output)


def _remove_tree(ctx: BuildContext, tree: Path) -> None:
    if not tree.exists():
        return
    try:
        shutil.rmtree(tree)
    except PermissionError:
        # Trees populated through sudo or chroot may contain root-owned files.
        result = ctx.runner.run(["rm", "-rf", str(tree)], sudo=True)
        if not result.ok:
            logger.warning("Could not remove %s: %s", tree, result.describe())
            return
    logger.info("Removed %s", tree)


# ── Registry ────────────────────────────────────────────────────


def _require_dir(path: Path, what: str, producer: Step) -> None:
    if not path.is_dir():
        raise ConfigurationError(
            f"{what} not found at {path}",
            remediation=f"Run 'onerecovery run {producer.value}' first.",
        )


def default_steps() -> list[PipelineStep]:
    return [
        PipelineStep(Step.PREPARE, prepare, "Prepare the build host"),
        PipelineStep(Step.FETCH, fetch, "Download and extract sources", sources_extracted),
        PipelineStep(Step.INSTALL, install, "Install Alpine packages", packages_installed),
        PipelineStep(Step.CONFIGURE, configure, "Configure rootfs and kernel"),
        PipelineStep(Step.BUILD, build, "Build kernel, modules and EFI image"),
        PipelineStep(Step.CLEANUP, cleanup, "Remove build intermediates"),
    ]
