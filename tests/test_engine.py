"""
Tests for the pipeline executor and the build steps.

Executor tests use recording steps; step tests run the real step
functions against the FakeRunner with real files in tmp_path.
"""

import logging
from pathlib import Path

import pytest

from onerecovery.adapters.shell.command import CommandResult
from onerecovery.core.engine.executor import (
    EXIT_INTERRUPTED,
    EXIT_TERMINATED,
    PipelineExecutor,
    PipelineInterrupted,
)
from onerecovery.core.engine.steps import (
    BZIMAGE,
    PipelineStep,
    build,
    cleanup,
    configure,
    default_steps,
    fetch,
    install,
    packages_installed,
    prepare,
    sources_extracted,
)
from onerecovery.core.errors import (
    BuildError,
    ConfigurationError,
    PipelineOrderError,
    ResourceExhaustionError,
)
from onerecovery.core.models.config import BuildConfig, PasswordPolicy
from onerecovery.core.models.features import MINIMAL_DISABLES, FeatureSet
from onerecovery.core.models.pipeline import BUILD_SEQUENCE, Step
from onerecovery.core.persistence.checkpoint_store import CheckpointStore
from tests.helpers import populate, write_tarball


def _recording_steps(calls: list[Step], *, fail: Step | None = None, error: BaseException | None = None):
    steps = []
    for step in Step:
        def action(ctx, step=step):
            calls.append(step)
            if step is fail:
                raise error or BuildError(f"{step.value} exploded", remediation="fix it")
        steps.append(PipelineStep(step, action))
    return steps


@pytest.fixture
def store(workdir: Path) -> CheckpointStore:
    return CheckpointStore(workdir / ".build_progress")


@pytest.fixture
def calls() -> list[Step]:
    return []


@pytest.fixture
def executor_for(make_context, store: CheckpointStore, calls: list[Step]):
    def _make(**kwargs) -> PipelineExecutor:
        return PipelineExecutor(_recording_steps(calls, **kwargs), store, make_context())

    return _make


# ── Executor: planning ───────────────────────────────────────────────


class TestPlan:
    """Tests for which steps a request runs."""

    def test_all_without_cleanup(self, executor_for):
        assert executor_for().plan("all") == list(BUILD_SEQUENCE)

    def test_skip_prepare(self, executor_for):
        assert Step.PREPARE not in executor_for().plan("all", skip_prepare=True)

    def test_resume_without_checkpoint_starts_over(self, executor_for):
        assert executor_for().plan("all", resume=True) == list(BUILD_SEQUENCE)

    def test_single_step_when_fresh(self, executor_for):
        assert executor_for().plan("fetch") == [Step.FETCH]

    def test_rerun_earlier_step_allowed(self, executor_for, store, caplog):
        store.save(Step.BUILD)
        with caplog.at_level(logging.WARNING):
            assert executor_for().plan("fetch") == [Step.FETCH]
        assert "moves the checkpoint back from 'build'" in caplog.text

    def test_next_step_does_not_warn(self, executor_for, store, caplog):
        store.save(Step.FETCH)
        with caplog.at_level(logging.WARNING):
            assert executor_for().plan("install") == [Step.INSTALL]
        assert "moves the checkpoint back" not in caplog.text

    def test_step_with_resume_continues_to_build(self, executor_for, store):
        store.save(Step.INSTALL)
        assert executor_for().plan("configure", resume=True) == [Step.CONFIGURE, Step.BUILD]

    def test_step_with_resume_keeps_order_rule(self, executor_for, store):
        store.save(Step.PREPARE)
        with pytest.raises(PipelineOrderError):
            executor_for().plan("configure", resume=True)

    def test_out_of_order_rejected(self, executor_for, store):
        store.save(Step.PREPARE)
        with pytest.raises(PipelineOrderError) as exc:
            executor_for().plan("install")
        assert exc.value.remediation == "onerecovery run fetch"

    def test_cleanup_always_allowed(self, executor_for, store):
        store.save(Step.PREPARE)
        assert executor_for().plan("cleanup") == [Step.CLEANUP]

    def test_missing_step_rejected(self, make_context, store):
        with pytest.raises(ValueError, match="cleanup"):
            PipelineExecutor(_recording_steps([])[:-1], store, make_context())


# ── Executor: running ────────────────────────────────────────────────


class TestRun:
    """Tests for execution, checkpointing and failure handling."""

    def test_full_run_checkpoints_build(self, executor_for, store, calls):
        report = executor_for().run("all")
        assert report.ok
        assert calls == list(BUILD_SEQUENCE)
        assert store.load().step is Step.BUILD

    @pytest.mark.parametrize("done", list(BUILD_SEQUENCE))
    def test_resume_runs_exactly_the_rest(self, executor_for, store, calls, done: Step):
        store.save(done)
        report = executor_for().run("all", resume=True)
        assert calls == [s for s in BUILD_SEQUENCE if s.position > done.position]
        assert report.ok

    def test_resume_at_end_is_nothing_to_do(self, executor_for, store, calls):
        store.save(Step.BUILD)
        report = executor_for().run("all", resume=True)
        assert report.nothing_to_do
        assert calls == []

    def test_order_error_exit_code(self, executor_for, store, calls):
        store.save(Step.PREPARE)
        report = executor_for().run("configure")
        assert report.exit_code == 2
        assert isinstance(report.error, PipelineOrderError)
        assert calls == []

    def test_failure_keeps_checkpoint(self, executor_for, store, calls, caplog):
        with caplog.at_level(logging.ERROR):
            report = executor_for(fail=Step.CONFIGURE).run("all")

        assert not report.ok
        assert report.exit_code == 1
        assert report.failed_step is Step.CONFIGURE
        assert calls == [Step.PREPARE, Step.FETCH, Step.INSTALL, Step.CONFIGURE]
        assert store.load().step is Step.INSTALL
        assert "Resume with: onerecovery run configure --resume" in caplog.text
        assert "Hint: fix it" in caplog.text

    def test_following_the_resume_hint_finishes_the_build(self, make_context, store, calls):
        """The printed resume command runs the failed step and everything after it."""
        failing = PipelineExecutor(_recording_steps(calls, fail=Step.INSTALL), store, make_context())
        report = failing.run("all")
        hint = failing.on_failure_hint(report.failed_step)
        assert hint == "onerecovery run install --resume"

        calls.clear()
        step, *flags = hint.split()[2:]
        report = PipelineExecutor(_recording_steps(calls), store, make_context()).run(
            step, resume="--resume" in flags,
        )
        assert report.ok
        assert calls == [Step.INSTALL, Step.CONFIGURE, Step.BUILD]
        assert store.load().step is Step.BUILD

    def test_failure_exit_code_follows_category(self, executor_for):
        report = executor_for(fail=Step.BUILD, error=ResourceExhaustionError("disk full")).run("all")
        assert report.exit_code == 6
        assert report.to_dict()["error"]["category"] == "resource-exhaustion"

    def test_os_error_becomes_build_error(self, executor_for, store):
        report = executor_for(fail=Step.FETCH, error=OSError(28, "No space left on device")).run("all")
        assert report.exit_code == 1
        assert "No space left" in report.error.message
        assert store.load().step is Step.PREPARE

    def test_unexpected_error_is_reported(self, executor_for, store, caplog):
        error = ValueError("unexpected value in config")
        with caplog.at_level(logging.ERROR):
            report = executor_for(fail=Step.CONFIGURE, error=error).run("all")

        assert report.exit_code == 1
        assert report.failed_step is Step.CONFIGURE
        assert report.error.message == "ValueError: unexpected value in config"
        assert report.error.__cause__ is error
        assert store.load().step is Step.INSTALL
        assert "Step 'configure' failed [build]" in caplog.text
        assert "Resume with: onerecovery run configure --resume" in caplog.text

    def test_satisfied_step_skips_and_commits(self, make_context, store, calls):
        steps = _recording_steps(calls)
        steps[1] = PipelineStep(Step.FETCH, lambda ctx: calls.append(Step.FETCH), satisfied=lambda ctx: True)
        store.save(Step.PREPARE)

        report = PipelineExecutor(steps, store, make_context()).run("fetch")
        assert calls == []
        assert report.outcomes[0].status == "skipped"
        assert store.load().step is Step.FETCH

    def test_cleanup_clears_checkpoint(self, executor_for, store):
        store.save(Step.BUILD)
        assert executor_for().run("cleanup").ok
        assert store.load() is None

    def test_clean_end(self, executor_for, store, calls):
        report = executor_for().run("all", clean_end=True)
        assert calls[-1] is Step.CLEANUP
        assert report.ok
        assert store.load() is None

    def test_clean_start_then_full_build(self, executor_for, store, calls):
        store.save(Step.BUILD)
        executor_for().run("all", resume=True, clean_start=True)
        assert calls == [Step.CLEANUP, *BUILD_SEQUENCE]

    def test_keyboard_interrupt(self, executor_for, store):
        report = executor_for(fail=Step.INSTALL, error=KeyboardInterrupt()).run("all")
        assert report.exit_code == EXIT_INTERRUPTED
        assert report.failed_step is Step.INSTALL
        assert report.outcomes[-1].status == "interrupted"
        assert store.load().step is Step.FETCH

    def test_sigterm_exit_code(self, executor_for):
        report = executor_for(fail=Step.FETCH, error=PipelineInterrupted(15)).run("all")
        assert report.exit_code == EXIT_TERMINATED

    def test_report_dict(self, executor_for):
        data = executor_for().run("fetch").to_dict()
        assert data["status"] == "ok"
        assert data["planned"] == ["fetch"]
        assert data["steps"][0]["step"] == "fetch"


# ── Steps ────────────────────────────────────────────────────────────


def _fake_download(url: str, dest: Path) -> None:
    if "alpine" in url:
        write_tarball(dest, {"bin/busybox": "#!", "etc/inittab": "#ttyS0::respawn:/sbin/getty -L 0 ttyS0 vt100\n"})
    elif "linux" in url:
        write_tarball(dest, {"linux-6.12.19/Makefile": "all:\n", "linux-6.12.19/scripts/a.sh": "\n"}, mode="w:xz")
    else:
        write_tarball(dest, {"zfs-2.3.0/configure": "#!/bin/sh\n"})


@pytest.fixture
def tree(workdir: Path) -> Path:
    """A working directory with extracted sources and the shipped inputs."""
    populate(workdir / "alpine-minirootfs", {
        "etc/inittab": "#ttyS0::respawn:/sbin/getty -L 0 ttyS0 vt100\ntty1::respawn:/sbin/getty 38400 tty1\n",
        "etc/shadow": "root:*:0:0:::::\n",
    })
    populate(workdir / "linux", {"Makefile": "all:\n"})
    populate(workdir / "zfs", {"configure": "#!/bin/sh\n"})
    populate(workdir / "zfiles", {name: f"{name}\n" for name in ("interfaces", "resolv.conf", "profile", "shadow", "init")})
    populate(workdir / "kernel-configs", {
        "standard.config": "CONFIG_MODULES=y\n# CONFIG_ZFS is not set\n",
        "minimal.config": "CONFIG_MODULES=y\n",
        "features/zfs-support.conf": "CONFIG_ZFS=y\nCONFIG_ZLIB_DEFLATE=y\nCONFIG_ZLIB_INFLATE=y\n",
    })
    return workdir


class TestPrepareAndFetch:
    """Tests for the prepare and fetch steps."""

    def test_prepare(self, make_context, workdir: Path):
        ctx = make_context()
        prepare(ctx)
        assert (workdir / "output").is_dir()
        assert ctx.cache.sources_dir.is_dir()

    def test_fetch_extracts_everything(self, make_context, workdir: Path, monkeypatch):
        monkeypatch.setattr("onerecovery.core.engine.steps.latest_alpine_version", lambda *a, **k: "3.21.3")
        monkeypatch.setattr("onerecovery.core.engine.steps.download", _fake_download)
        ctx = make_context()

        assert not sources_extracted(ctx)
        fetch(ctx)

        assert ctx.alpine_version == "3.21.3"
        assert (workdir / "alpine-minirootfs" / "bin" / "busybox").is_file()
        assert (workdir / "linux" / "Makefile").is_file()
        assert (workdir / "zfs" / "configure").is_file()
        assert sources_extracted(ctx)

    def test_fetch_is_idempotent(self, make_context, monkeypatch):
        downloads: list[str] = []

        def counting(url: str, dest: Path) -> None:
            downloads.append(url)
            _fake_download(url, dest)

        monkeypatch.setattr("onerecovery.core.engine.steps.latest_alpine_version", lambda *a, **k: "3.21.3")
        monkeypatch.setattr("onerecovery.core.engine.steps.download", counting)
        ctx = make_context()
        fetch(ctx)
        fetch(ctx)
        assert len(downloads) == 3


class TestInstall:
    """Tests for the package installation step."""

    def test_runs_script_in_chroot(self, make_context, tree: Path, fake_runner):
        ctx = make_context()
        install(ctx)

        chroot = fake_runner.commands_for("chroot")
        assert chroot[0][-2:] == ["/bin/ash", "/mk.sh"]
        assert not (tree / "alpine-minirootfs" / "mk.sh").exists()
        assert packages_installed(ctx)

    def test_changed_packages_reinstall(self, make_context, tree: Path, tmp_path: Path):
        install(make_context())
        changed = BuildConfig(cache_dir=tmp_path / "cache", extra_packages=("htop",))
        assert not packages_installed(make_context(changed))

    def test_failed_script_propagates_exit_code(self, make_context, tree: Path, fake_runner):
        fake_runner.set_failure("chroot", stderr="ERROR: unable to select packages", returncode=3)
        with pytest.raises(BuildError) as exc:
            install(make_context())
        assert exc.value.exit_code == 3
        assert not (tree / "alpine-minirootfs" / ".packages_installed").exists()

    def test_requires_rootfs(self, make_context):
        with pytest.raises(ConfigurationError, match="Alpine root filesystem"):
            install(make_context())


class TestConfigure:
    """Tests for rootfs and kernel configuration."""

    @pytest.fixture(autouse=True)
    def _openssl(self, fake_runner):
        fake_runner.set_response("openssl", CommandResult(stdout="$6$salt$hashed\n"))

    def test_configures_rootfs_and_kernel(self, make_context, tree: Path, fake_runner):
        ctx = make_context()
        configure(ctx)

        rootfs = tree / "alpine-minirootfs"
        assert (rootfs / "etc" / "runlevels" / "sysinit" / "mdev").is_symlink()
        assert (rootfs / "init").is_file()
        assert "ttyS0::respawn" in (rootfs / "etc" / "inittab").read_text().splitlines()[0]
        assert "/sbin/getty -a root 38400" in (rootfs / "etc" / "inittab").read_text()
        assert (rootfs / "etc" / "shadow").read_text().startswith("root:$6$salt$hashed:")
        assert "CONFIG_ZFS=y" in (tree / "linux" / ".config").read_text()
        assert ["make", "olddefconfig"] in fake_runner.call_log

    def test_generated_password_file(self, make_context, tree: Path):
        ctx = make_context()
        configure(ctx)
        assert len(ctx.generated_password) == 12
        password_file = tree / "onerecovery-password.txt"
        assert ctx.generated_password in password_file.read_text()
        assert password_file.stat().st_mode & 0o777 == 0o600

    def test_no_password(self, make_context, tree: Path, tmp_path: Path):
        config = BuildConfig(cache_dir=tmp_path / "cache", password=PasswordPolicy(mode="none"))
        configure(make_context(config))
        assert (tree / "alpine-minirootfs" / "etc" / "shadow").read_text().startswith("root::")
        assert not (tree / "onerecovery-password.txt").exists()

    def test_non_utf8_base_config(self, make_context, tree: Path):
        """Latin-1 bytes in a string option pass through the merge unchanged."""
        (tree / "kernel-configs" / "standard.config").write_bytes(
            b'CONFIG_MODULES=y\nCONFIG_LOCALVERSION="-r\xe9cup"\n# CONFIG_ZFS is not set\n',
        )
        configure(make_context())

        merged = (tree / "linux" / ".config").read_bytes()
        assert b'CONFIG_LOCALVERSION="-r\xe9cup"' in merged
        assert b"CONFIG_ZFS=y" in merged

    def test_zfs_patch_required(self, make_context, tree: Path):
        (tree / "kernel-configs" / "features" / "zfs-support.conf").unlink()
        with pytest.raises(ConfigurationError, match="zfs"):
            configure(make_context())

    def test_missing_zfiles(self, make_context, tree: Path):
        (tree / "zfiles" / "init").unlink()
        with pytest.raises(ConfigurationError, match="init"):
            configure(make_context())

    def test_interactive_config(self, make_context, tree: Path, tmp_path: Path, fake_runner):
        config = BuildConfig(cache_dir=tmp_path / "cache", interactive_config=True)
        configure(make_context(config))
        assert ["make", "menuconfig"] in fake_runner.call_log


class TestBuild:
    """Tests for the kernel build step."""

    @pytest.fixture
    def configured(self, tree: Path) -> Path:
        kernel = tree / "linux"
        (kernel / ".config").write_text("CONFIG_MODULES=y\nCONFIG_ZLIB_DEFLATE=y\nCONFIG_ZLIB_INFLATE=y\n")
        image = kernel / BZIMAGE
        image.parent.mkdir(parents=True)
        image.write_bytes(b"MZ" + b"\0" * 64)
        return tree

    def _minimal(self, tmp_path: Path, **kwargs) -> BuildConfig:
        features = FeatureSet(**{name: False for name in MINIMAL_DISABLES}, minimal_kernel=True)
        return BuildConfig(cache_dir=tmp_path / "cache", features=features, **kwargs)

    def test_minimal_build_with_swap(self, make_context, configured: Path, tmp_path: Path, fake_runner):
        """Low memory + --use-swap: swap exists during the build and is gone after."""
        ctx = make_context(self._minimal(tmp_path, use_swap=True), memory_gib=2)
        build(ctx)

        assert (configured / "output" / "OneRecovery.efi").is_file()
        assert fake_runner.commands_for("swapon")
        assert fake_runner.commands_for("swapoff")
        assert ctx.planner.swap_active is False
        make = fake_runner.commands_for("make")
        assert make[0][1] == "-j1"
        assert any("modules_install" in argv for argv in make)
        assert not any("autogen.sh" in argv[0] for argv in fake_runner.call_log)
        assert fake_runner.commands_for("depmod")[0][-1] == "6.12.19"
        assert fake_runner.commands_for("upx")

    def test_compiler_cache_cleared(self, make_context, configured: Path, tmp_path: Path, fake_runner):
        build(make_context(self._minimal(tmp_path)))
        assert ["ccache", "-C"] in [argv[:2] for argv in fake_runner.call_log]

    def test_keep_ccache(self, make_context, configured: Path, tmp_path: Path, fake_runner):
        build(make_context(self._minimal(tmp_path, keep_ccache=True)))
        assert ["ccache", "-C"] not in [argv[:2] for argv in fake_runner.call_log]

    def test_zfs_build(self, make_context, configured: Path, fake_runner):
        build(make_context())
        programs = [argv[0] for argv in fake_runner.call_log]
        assert "./autogen.sh" in programs
        assert "./configure" in programs
        assert not (configured / "alpine-minirootfs" / "fake").exists()

    def test_zfs_needs_kernel_options(self, make_context, configured: Path):
        (configured / "linux" / ".config").write_text("CONFIG_MODULES=y\n")
        with pytest.raises(ConfigurationError, match="CONFIG_ZLIB_DEFLATE"):
            build(make_context())

    def test_disk_full_is_diagnosed(self, make_context, configured: Path, tmp_path: Path, fake_runner):
        fake_runner.set_failure("make", stderr="ld: final link failed: No space left on device")
        with pytest.raises(ResourceExhaustionError) as exc:
            build(make_context(self._minimal(tmp_path)))
        assert "Disk space" in exc.value.message

    def test_requires_config(self, make_context, tree: Path):
        with pytest.raises(ConfigurationError, match="Kernel config"):
            build(make_context())

    def test_missing_image(self, make_context, configured: Path, tmp_path: Path):
        (configured / "linux" / BZIMAGE).unlink()
        with pytest.raises(BuildError, match="Kernel image not found"):
            build(make_context(self._minimal(tmp_path)))


class TestCleanup:
    def test_removes_intermediates_keeps_output(self, make_context, tree: Path):
        (tree / ".alpine-minirootfs.extraction_complete").write_text("done")
        (tree / "linux-6.12.19.tar.xz").write_bytes(b"x")
        (tree / "onerecovery-password.txt").write_text("secret")
        populate(tree / "output", {"OneRecovery.efi": "MZ"})

        cleanup(make_context())

        assert not (tree / "alpine-minirootfs").exists()
        assert not (tree / "linux").exists()
        assert not (tree / "zfs").exists()
        assert not (tree / ".alpine-minirootfs.extraction_complete").exists()
        assert not (tree / "linux-6.12.19.tar.xz").exists()
        assert not (tree / "onerecovery-password.txt").exists()
        assert (tree / "output" / "OneRecovery.efi").is_file()


class TestDefaultSteps:
    def test_one_per_step(self):
        assert [s.step for s in default_steps()] == list(Step)
