"""Shared fixtures for component tests.

Containers never start here: ``RecordingContainerBackend`` stands in for
docker, and volumes live in a temporary directory.
"""

from __future__ import annotations

import httpx
import pytest
from secflow.context import ProgressEmitter, create_execution_context
from secflow.runner import ContainerResult, ContainerRunnerConfig
from secflow.volumes import LocalVolumeBackend, VolumeManager


class RecordingContainerBackend:
    """Records each launch and snapshots the files visible in its mounts."""

    def __init__(self, volume_backend: LocalVolumeBackend):
        self.volume_backend = volume_backend
        self.result = ContainerResult("", "", 0)
        self.calls: list[ContainerRunnerConfig] = []
        self.mounted_files: dict[str, dict[str, str]] = {}

    def respond(self, stdout: str = "", stderr: str = "", exit_code: int = 0) -> None:
        self.result = ContainerResult(stdout, stderr, exit_code)

    async def run(self, config, on_output=None):
        self.calls.append(config)
        for mount in config.volumes:
            root = self.volume_backend.path_for(mount.source)
            self.mounted_files[mount.target] = {
                path.relative_to(root).as_posix(): path.read_text(encoding="utf-8")
                for path in sorted(root.rglob("*"))
                if path.is_file()
            }
        if on_output is not None:
            for line in self.result.stderr.splitlines():
                on_output("stderr", line)
        return self.result

    @property
    def last(self) -> ContainerRunnerConfig:
        return self.calls[-1]


@pytest.fixture(autouse=True)
def _no_dotenv(tmp_path, monkeypatch):
    """Keep a developer's .env out of credential lookups."""
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def volume_backend(tmp_path) -> LocalVolumeBackend:
    return LocalVolumeBackend(tmp_path / "secflow-volumes")


@pytest.fixture
def volumes(volume_backend) -> VolumeManager:
    return VolumeManager(volume_backend)


@pytest.fixture
def containers(volume_backend) -> RecordingContainerBackend:
    return RecordingContainerBackend(volume_backend)


@pytest.fixture
def leftover_volumes(volume_backend):
    """Names of volume directories still present on disk."""
    return lambda: sorted(p.name for p in (volume_backend.root / "volumes").iterdir())


@pytest.fixture
def make_context(volumes, containers):
    """Factory for execution contexts wired to the test doubles.

    Pass ``handler`` to answer HTTP requests with ``httpx.MockTransport``.
    The context owns its client, so use it as an async context manager to
    close it.
    """

    def _make(component_id: str = "secflow.test", handler=None, **kwargs):
        return create_execution_context(
            component_id,
            run_id=kwargs.pop("run_id", "run-1"),
            tenant_id=kwargs.pop("tenant_id", "tenant-a"),
            http_transport=httpx.MockTransport(handler) if handler else None,
            volumes=volumes,
            containers=containers,
            progress=ProgressEmitter(maxsize=64),
            **kwargs,
        )

    return _make
