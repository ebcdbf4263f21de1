"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from onerecovery.adapters.mock import FakeRunner
from onerecovery.core.engine.context import BuildContext
from onerecovery.core.models.config import BuildConfig
from onerecovery.core.models.environment import EnvironmentProfile
from onerecovery.core.planning.resources import ResourcePlanner
from tests.helpers import HOST_TOOLS, fixed_memory


@pytest.fixture
def host_profile() -> EnvironmentProfile:
    """Unprivileged user on bare metal with sudo available."""
    return EnvironmentProfile(has_sudo=True, uid=1000, gid=1000)


@pytest.fixture
def container_profile() -> EnvironmentProfile:
    """Root inside a container."""
    return EnvironmentProfile(is_container=True, uid=0, gid=0)


@pytest.fixture
def fake_runner(host_profile: EnvironmentProfile) -> FakeRunner:
    """Recording runner on the bare host where every build tool exists."""
    return FakeRunner(host_profile, tools=HOST_TOOLS)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def make_context(workdir: Path, fake_runner: FakeRunner, tmp_path: Path):
    """Factory building a BuildContext over the fake runner."""

    def _make(config: BuildConfig | None = None, *, memory_gib: float = 16, cores: int = 8) -> BuildContext:
        cfg = config or BuildConfig(cache_dir=tmp_path / "cache")
        planner = ResourcePlanner(
            fake_runner,
            use_swap=cfg.use_swap,
            jobs=cfg.jobs,
            meminfo=fixed_memory(memory_gib),
            cores=lambda: cores,
            swap_file=tmp_path / "swapfile",
        )
        return BuildContext.create(workdir, cfg, fake_runner.profile, fake_runner, planner=planner)

    return _make
