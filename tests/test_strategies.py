"""
Tests for strategy chains — selection, fallback, extraction, symlinks, chroot.
"""

import io
import os
import tarfile
from pathlib import Path

import pytest

from onerecovery.adapters.mock import FakeRunner
from onerecovery.adapters.shell.command import CommandResult
from onerecovery.core.errors import CommandError, ExtractionError, PrivilegeError
from onerecovery.core.models.environment import EnvironmentKind, EnvironmentProfile
from onerecovery.core.models.strategy import Operation, StrategyKind, StrategyResult
from onerecovery.core.strategies.base import ExtractRequest, Strategy
from onerecovery.core.strategies.extraction import ArchiveExtractor, restore_exec_bits
from onerecovery.core.strategies.operations import RootfsOperations
from onerecovery.core.strategies.runner import try_strategies
from onerecovery.core.strategies.selector import CHAINS, resolve
from tests.helpers import populate, write_tarball


def _populating(target: Path, files: dict[str, str] | None = None):
    """Fake tar response that fills ``target``."""

    def respond(argv: list[str]) -> CommandResult:
        populate(target, files)
        return CommandResult(command=argv)

    return respond


class _Scripted(Strategy):
    kind = StrategyKind.DIRECT
    operation = Operation.EXTRACT

    def __init__(self, name: str, result: StrategyResult) -> None:
        self._name = name
        self.result = result
        self.calls = 0

    @property
    def name(self) -> str:
        return self._name

    def execute(self, request):
        self.calls += 1
        return self.result


# ── Selector ─────────────────────────────────────────────────────────


class TestSelector:
    """Tests for the chain tables."""

    def test_every_table_covers_every_kind(self):
        for table in CHAINS.values():
            assert set(table) == set(EnvironmentKind)

    @pytest.mark.parametrize("operation", list(Operation))
    @pytest.mark.parametrize(
        "profile",
        [
            EnvironmentProfile(),
            EnvironmentProfile(is_container=True),
            EnvironmentProfile(is_ci=True),
        ],
    )
    def test_chains_end_with_placeholder(self, operation, profile, fake_runner):
        strategies = resolve(operation, profile, runner=fake_runner)
        assert strategies[-1].kind is StrategyKind.PLACEHOLDER_FALLBACK

    def test_container_extraction_order(self, fake_runner):
        names = [s.name for s in resolve(Operation.EXTRACT, EnvironmentProfile(is_container=True), runner=fake_runner)]
        assert names == ["parallel", "tar", "extract-cache", "sudo-tar", "python-tarfile"]

    def test_bare_extraction_order(self, fake_runner):
        names = [s.name for s in resolve(Operation.EXTRACT, EnvironmentProfile(), runner=fake_runner)]
        assert names == ["tar", "sudo-tar", "python-tarfile"]


# ── try_strategies ───────────────────────────────────────────────────


class TestTryStrategies:
    """Tests for the generic fallback loop."""

    def _request(self, tmp_path: Path) -> ExtractRequest:
        return ExtractRequest(archive=tmp_path / "a.tar.gz", target=tmp_path / "t")

    def test_first_success_stops_chain(self, tmp_path: Path):
        first = _Scripted("one", StrategyResult.success("one"))
        second = _Scripted("two", StrategyResult.success("two"))
        result = try_strategies([first, second], self._request(tmp_path))
        assert result.strategy == "one"
        assert second.calls == 0

    def test_falls_through_to_second(self, tmp_path: Path):
        first = _Scripted("one", StrategyResult.failure("one", "boom"))
        second = _Scripted("two", StrategyResult.success("two"))
        result = try_strategies([first, second], self._request(tmp_path))
        assert result.strategy == "two"
        assert [a["strategy"] for a in result.metadata["attempts"]] == ["one", "two"]

    def test_exhaustion_names_everything(self, tmp_path: Path):
        first = _Scripted("one", StrategyResult.failure("one", "boom"))
        second = _Scripted("two", StrategyResult.failure("two", "bang"))
        with pytest.raises(ExtractionError) as exc:
            try_strategies([first, second], self._request(tmp_path), error_cls=ExtractionError, what="Extraction")
        assert "one, two" in str(exc.value)
        assert "bang" in str(exc.value)

    def test_raising_strategy_is_contained(self, tmp_path: Path):
        class Exploding(_Scripted):
            def execute(self, request):
                raise RuntimeError("unexpected")

        fallback = _Scripted("two", StrategyResult.success("two"))
        result = try_strategies([Exploding("one", StrategyResult.success("one")), fallback], self._request(tmp_path))
        assert result.strategy == "two"

    def test_terminal_failure_stops_chain(self, tmp_path: Path):
        first = _Scripted(
            "one",
            StrategyResult.failure("one", "exit 3", terminal=True, metadata={"returncode": 3, "output": "apk: oops"}),
        )
        second = _Scripted("two", StrategyResult.success("two"))
        with pytest.raises(CommandError) as exc:
            try_strategies([first, second], self._request(tmp_path))
        assert exc.value.exit_code == 3
        assert "apk: oops" in exc.value.output
        assert second.calls == 0

    def test_elevated_retry_only_after_permission_error(self, tmp_path: Path):
        elevated = _Scripted("sudo", StrategyResult.success("sudo"))
        elevated.only_after_permission_error = True
        fallback = _Scripted("last", StrategyResult.success("last"))
        plain_failure = _Scripted("one", StrategyResult.failure("one", "corrupt archive"))
        result = try_strategies([plain_failure, elevated, fallback], self._request(tmp_path))
        assert result.strategy == "last"
        assert elevated.calls == 0

        denied = _Scripted("one", StrategyResult.failure("one", "Permission denied", permission_denied=True))
        result = try_strategies([denied, elevated, fallback], self._request(tmp_path))
        assert result.strategy == "sudo"


# ── Extraction ───────────────────────────────────────────────────────


class TestArchiveExtractor:
    """Tests for idempotent extraction through the chain."""

    def test_tar_success_writes_marker(self, tmp_path: Path, fake_runner: FakeRunner):
        archive = write_tarball(tmp_path / "linux-6.12.19.tar.xz", {"x": "y"}, mode="w:xz")
        target = tmp_path / "linux"
        fake_runner.set_response("tar", _populating(target))

        result = ArchiveExtractor(fake_runner, fake_runner.profile).extract(archive, target, strip_components=1)
        assert result.strategy == "tar"
        assert (tmp_path / ".linux.extraction_complete").is_file()
        assert "--strip-components=1" in fake_runner.commands_for("tar")[0]

    def test_marked_target_is_noop(self, tmp_path: Path, fake_runner: FakeRunner):
        """Re-running extraction on a marked target runs no strategy."""
        archive = write_tarball(tmp_path / "a.tar.gz", {"x": "y"})
        target = tmp_path / "alpine-minirootfs"
        fake_runner.set_response("tar", _populating(target))
        extractor = ArchiveExtractor(fake_runner, fake_runner.profile)
        extractor.extract(archive, target)
        calls = fake_runner.call_count

        result = extractor.extract(archive, target)
        assert result.status == "skipped"
        assert fake_runner.call_count == calls

    def test_primary_failure_falls_back(self, tmp_path: Path):
        """Primary strategy fails → strategy 2 succeeds and writes the same marker."""
        runner = FakeRunner(EnvironmentProfile(is_container=True, uid=0, gid=0), tools=("tar", "pigz"))
        archive = write_tarball(tmp_path / "a.tar.gz", {"x": "y"})
        target = tmp_path / "rootfs"
        runner.set_failure("pigz", stderr="pigz: corrupt input")
        runner.set_response("tar", _populating(target))

        result = ArchiveExtractor(runner, runner.profile).extract(archive, target)
        assert result.strategy == "tar"
        attempts = [a["strategy"] for a in result.metadata["attempts"]]
        assert attempts == ["parallel", "tar"]
        marker = tmp_path / ".rootfs.extraction_complete"
        assert "strategy=tar" in marker.read_text()

    def test_python_fallback_extracts_for_real(self, tmp_path: Path):
        """No tar binary at all: the pure-Python strategy does the work."""
        runner = FakeRunner(EnvironmentProfile(uid=1000), tools=())
        archive = write_tarball(
            tmp_path / "zfs-2.3.0.tar.gz",
            {"zfs-2.3.0/configure": "#!/bin/sh\n", "zfs-2.3.0/module/Makefile": "all:\n"},
        )
        target = tmp_path / "zfs"

        result = ArchiveExtractor(runner, runner.profile).extract(archive, target, strip_components=1)
        assert result.strategy == "python-tarfile"
        assert (target / "configure").is_file()
        assert (target / "module" / "Makefile").is_file()
        assert not (tmp_path / ".zfs.partial").exists()

    def test_python_fallback_keeps_absolute_rootfs_symlinks(self, tmp_path: Path):
        runner = FakeRunner(EnvironmentProfile(uid=1000), tools=())
        archive = tmp_path / "alpine-minirootfs.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            busybox = tarfile.TarInfo("bin/busybox")
            busybox.size = 3
            busybox.mode = 0o755
            tar.addfile(busybox, io.BytesIO(b"elf"))
            sh = tarfile.TarInfo("bin/sh")
            sh.type = tarfile.SYMTYPE
            sh.linkname = "/bin/busybox"
            tar.addfile(sh)
        target = tmp_path / "alpine-minirootfs"

        result = ArchiveExtractor(runner, runner.profile).extract(archive, target)
        assert result.strategy == "python-tarfile"
        assert os.readlink(target / "bin" / "sh") == "/bin/busybox"

    def test_python_fallback_refuses_escaping_members(self, tmp_path: Path):
        runner = FakeRunner(EnvironmentProfile(uid=1000), tools=())
        archive = write_tarball(tmp_path / "evil.tar.gz", {"../../escaped": "gotcha", "ok": "fine"})
        target = tmp_path / "work" / "tree"

        with pytest.raises(ExtractionError):
            ArchiveExtractor(runner, runner.profile).extract(archive, target)
        assert not (tmp_path / "escaped").exists()
        assert not (tmp_path / "work" / ".tree.extraction_complete").exists()

    def test_permission_error_triggers_sudo_on_host(self, tmp_path: Path, fake_runner: FakeRunner):
        archive = write_tarball(tmp_path / "a.tar.gz", {"x": "y"})
        target = tmp_path / "rootfs"
        fake_runner.set_failure("tar", stderr="tar: Cannot open: Permission denied")
        fake_runner.set_response("sudo:tar", _populating(target))

        result = ArchiveExtractor(fake_runner, fake_runner.profile).extract(archive, target)
        assert result.strategy == "sudo-tar"
        chown = fake_runner.commands_for("chown")
        assert chown and "1000:1000" in chown[0]

    def test_missing_archive(self, tmp_path: Path, fake_runner: FakeRunner):
        with pytest.raises(ExtractionError):
            ArchiveExtractor(fake_runner, fake_runner.profile).extract(tmp_path / "nope.tar.gz", tmp_path / "t")

    def test_every_strategy_failing_raises(self, tmp_path: Path):
        runner = FakeRunner(EnvironmentProfile(uid=1000), tools=("tar",))
        runner.set_failure("tar", stderr="tar: unexpected EOF")
        archive = tmp_path / "broken.tar.gz"
        archive.write_bytes(b"not a tarball")
        with pytest.raises(ExtractionError) as exc:
            ArchiveExtractor(runner, runner.profile).extract(archive, tmp_path / "t")
        assert "tar" in exc.value.message
        assert "python-tarfile" in exc.value.message
        assert not (tmp_path / ".t.extraction_complete").exists()

    def test_kernel_tree_gets_exec_bits(self, tmp_path: Path, fake_runner: FakeRunner):
        archive = write_tarball(tmp_path / "linux-6.12.19.tar.xz", {"x": "y"}, mode="w:xz")
        target = tmp_path / "linux"
        files = {"Makefile": "all:\n", "scripts/link-vmlinux.sh": "#!/bin/sh\n"}
        fake_runner.set_response("tar", _populating(target, files))

        ArchiveExtractor(fake_runner, fake_runner.profile).extract(archive, target, kernel=True)
        assert os.access(target / "scripts" / "link-vmlinux.sh", os.X_OK)
        assert not fake_runner.commands_for("chown")

    def test_clear_marker(self, tmp_path: Path, fake_runner: FakeRunner):
        extractor = ArchiveExtractor(fake_runner, fake_runner.profile)
        (tmp_path / ".linux.extraction_complete").write_text("done")
        assert extractor.is_extracted(tmp_path / "linux")
        extractor.clear_marker(tmp_path / "linux")
        assert not extractor.is_extracted(tmp_path / "linux")


class TestRestoreExecBits:
    def test_only_build_scripts(self, tmp_path: Path):
        populate(tmp_path, {"Makefile": "", "scripts/a.sh": "", "tools/b/c.sh": "", "Documentation/d.sh": ""})
        assert restore_exec_bits(tmp_path) == 3
        assert not os.access(tmp_path / "Documentation" / "d.sh", os.X_OK)


# ── Symlinks and chroot ──────────────────────────────────────────────


class TestRootfsOperations:
    """Tests for symlink and chroot chains."""

    def test_direct_symlink(self, tmp_path: Path, fake_runner: FakeRunner):
        ops = RootfsOperations(fake_runner, fake_runner.profile)
        link = tmp_path / "etc" / "runlevels" / "sysinit" / "mdev"
        result = ops.symlink("/etc/init.d/mdev", link)
        assert result.strategy == "direct"
        assert os.readlink(link) == "/etc/init.d/mdev"

    def test_symlink_replaces_existing_file(self, tmp_path: Path, fake_runner: FakeRunner):
        link = tmp_path / "getty"
        link.write_text("old")
        RootfsOperations(fake_runner, fake_runner.profile).symlink("/sbin/agetty", link)
        assert link.is_symlink()

    def test_placeholder_when_links_impossible(self, tmp_path: Path, monkeypatch):
        runner = FakeRunner(EnvironmentProfile(uid=1000))

        def deny(*args, **kwargs):
            raise PermissionError("Operation not permitted")

        monkeypatch.setattr("onerecovery.core.strategies.symlink.os.symlink", deny)
        link = tmp_path / "mdev"
        result = RootfsOperations(runner, runner.profile).symlink("/etc/init.d/mdev", link)
        assert result.strategy == "placeholder"
        assert result.metadata["degraded"] is True
        assert link.read_text().strip() == "/etc/init.d/mdev"

    def test_sudo_chroot_on_host(self, tmp_path: Path, fake_runner: FakeRunner):
        result = RootfsOperations(fake_runner, fake_runner.profile).chroot(tmp_path, ["/bin/ash", "/mk.sh"])
        assert result.strategy == "sudo-chroot"
        chroot = fake_runner.commands_for("chroot")
        assert chroot[0][:3] == ["sudo", "-n", "-E"]
        assert chroot[0][-2:] == ["/bin/ash", "/mk.sh"]
        # Host mounts are undone
        assert len(fake_runner.commands_for("umount")) == 4

    def test_container_mounts_only_proc(self, tmp_path: Path, container_profile):
        runner = FakeRunner(container_profile, tools=("chroot",))
        result = RootfsOperations(runner, container_profile).chroot(tmp_path, ["true"])
        assert result.strategy == "direct-chroot"
        mounts = runner.commands_for("mount")
        assert len(mounts) == 1
        assert mounts[0][-1] == str(tmp_path / "proc")

    def test_failed_command_is_terminal(self, tmp_path: Path, fake_runner: FakeRunner):
        fake_runner.set_failure("chroot", stderr="ERROR: unable to select packages", returncode=2)
        with pytest.raises(CommandError) as exc:
            RootfsOperations(fake_runner, fake_runner.profile).chroot(tmp_path, ["/bin/ash", "/mk.sh"])
        assert exc.value.exit_code == 2

    def test_no_privilege_critical_fails(self, tmp_path: Path):
        runner = FakeRunner(EnvironmentProfile(uid=1000), tools=("chroot",))
        with pytest.raises(PrivilegeError) as exc:
            RootfsOperations(runner, runner.profile).chroot(tmp_path, ["true"])
        assert "root or sudo" in exc.value.message

    def test_no_privilege_non_critical_skips(self, tmp_path: Path):
        runner = FakeRunner(EnvironmentProfile(uid=1000), tools=("chroot",))
        result = RootfsOperations(runner, runner.profile).chroot(tmp_path, ["true"], critical=False)
        assert result.status == "skipped"
        assert not runner.commands_for("chroot")
