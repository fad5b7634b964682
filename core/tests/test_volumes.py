"""Tests for isolated volume naming, population and cleanup."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from secflow.errors import ConfigurationError, ServiceError, ValidationError
from secflow.volumes import (
    LABEL_CREATED,
    LABEL_MANAGED,
    DockerVolumeBackend,
    LocalVolumeBackend,
    MountDescriptor,
    VolumeInfo,
    VolumeManager,
    path_problems,
    validate_relative_path,
    volume_name,
)


class TestVolumeName:
    def test_deterministic(self):
        assert volume_name("acme", "run-1") == volume_name("acme", "run-1")

    def test_readable_prefix(self):
        assert volume_name("acme", "run1").startswith("tenant-acme-run-run1-")

    def test_ambiguous_prefixes_do_not_collide(self):
        # Same readable prefix "tenant-a-run-b-run-c"
        assert volume_name("a-run-b", "c") != volume_name("a", "b-run-c")

    def test_distinct_pairs_never_collide(self):
        names = {volume_name(f"t{t}", f"r{r}") for t in range(20) for r in range(20)}
        assert len(names) == 400

    @pytest.mark.parametrize("tenant,run", [("acme corp", "r1"), ("acme", "../r1"), ("", "r1")])
    def test_invalid_identifiers(self, tenant, run):
        with pytest.raises(ValidationError):
            volume_name(tenant, run)


class TestPathValidation:
    @pytest.mark.parametrize(
        "path",
        ["targets.txt", "templates/http/cve-2024-0001.yaml", "a_b-c.d"],
    )
    def test_safe_paths(self, path):
        assert path_problems(path) == []
        assert validate_relative_path(path) == path

    @pytest.mark.parametrize(
        "path,problem",
        [
            ("../../etc/passwd", "parent directory traversal is not allowed"),
            ("/etc/passwd", "absolute paths are not allowed"),
            (".env", "hidden files are not allowed"),
            ("a//b.txt", "empty path segments are not allowed"),
            ("file name.txt", "path contains unsafe characters"),
            ("$(id).txt", "path contains unsafe characters"),
            ("", "path must be a non-empty string"),
        ],
    )
    def test_unsafe_paths(self, path, problem):
        assert problem in path_problems(path)
        with pytest.raises(ValidationError):
            validate_relative_path(path)


class TestLocalVolumeBackend:
    @pytest.mark.asyncio
    async def test_write_outside_volume_rejected(self, tmp_path: Path):
        backend = LocalVolumeBackend(tmp_path)
        await backend.create("vol", {})
        with pytest.raises(ValidationError):
            await backend.write_file("vol", "../escape.txt", b"x")
        assert not (tmp_path / "volumes" / "escape.txt").exists()

    @pytest.mark.asyncio
    async def test_write_to_missing_volume(self, tmp_path: Path):
        backend = LocalVolumeBackend(tmp_path)
        with pytest.raises(ServiceError):
            await backend.write_file("missing", "a.txt", b"x")

    @pytest.mark.asyncio
    async def test_list_filters_by_label(self, tmp_path: Path):
        backend = LocalVolumeBackend(tmp_path)
        await backend.create("one", {LABEL_MANAGED: "true"})
        await backend.create("two", {"other": "x"})

        volumes = await backend.list_volumes({LABEL_MANAGED: "true"})

        assert [v.name for v in volumes] == ["one"]


class TestVolumeManager:
    def setup_method(self):
        self.tenant = "acme"
        self.run = "run-42"

    def _manager(self, tmp_path: Path) -> tuple[VolumeManager, LocalVolumeBackend]:
        backend = LocalVolumeBackend(tmp_path)
        return VolumeManager(backend), backend

    @pytest.mark.asyncio
    async def test_allocate_is_idempotent(self, tmp_path: Path):
        manager, _ = self._manager(tmp_path)
        first = await manager.allocate(self.tenant, self.run)
        second = await manager.allocate(self.tenant, self.run)
        assert first == second

    @pytest.mark.asyncio
    async def test_concurrent_allocate_same_pair(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        backend.create = AsyncMock(wraps=backend.create)

        handles = await asyncio.gather(*(manager.allocate(self.tenant, self.run) for _ in range(10)))

        assert len({h.name for h in handles}) == 1
        assert backend.create.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_allocate_distinct_pairs(self, tmp_path: Path):
        manager, _ = self._manager(tmp_path)
        handles = await asyncio.gather(
            *(manager.allocate(f"tenant{i}", f"run{i}") for i in range(10))
        )
        assert len({h.name for h in handles}) == 10

    @pytest.mark.asyncio
    async def test_populate_and_read_back(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        handle = await manager.allocate(self.tenant, self.run)

        await manager.populate(handle, {"targets.txt": "example.com", "bin/data.bin": b"\x00\x01"})

        assert (backend.path_for(handle.name) / "bin" / "data.bin").read_bytes() == b"\x00\x01"
        contents = await manager.read_files(handle, ["targets.txt", "missing.txt"])
        assert contents == {"targets.txt": "example.com"}

    @pytest.mark.asyncio
    async def test_populate_validates_every_path_before_writing(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        handle = await manager.allocate(self.tenant, self.run)

        with pytest.raises(ValidationError) as exc_info:
            await manager.populate(
                handle, {"ok.txt": "fine", "../../etc/passwd": "x", "/abs": "y"}
            )

        assert set(exc_info.value.field_errors) == {"../../etc/passwd", "/abs"}
        assert list(backend.path_for(handle.name).iterdir()) == []

    def test_mount_spec(self, tmp_path: Path):
        manager, _ = self._manager(tmp_path)
        handle = MagicMock()
        handle.name = "vol"

        mount = manager.mount_spec(handle, "/inputs")

        assert mount == MountDescriptor(source="vol", target="/inputs", read_only=True)
        assert mount.to_dict() == {"source": "vol", "target": "/inputs", "readOnly": True}
        with pytest.raises(ValidationError):
            manager.mount_spec(handle, "inputs")

    @pytest.mark.asyncio
    async def test_cleanup_runs_once(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        backend.remove = AsyncMock(wraps=backend.remove)
        handle = await manager.allocate(self.tenant, self.run)

        assert await manager.cleanup(handle) is True
        assert await manager.cleanup(handle) is False
        assert backend.remove.await_count == 1
        assert not backend.path_for(handle.name).exists()

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_logged_not_raised(self, tmp_path: Path, caplog):
        manager, backend = self._manager(tmp_path)
        backend.remove = AsyncMock(side_effect=ServiceError("daemon gone"))
        handle = await manager.allocate(self.tenant, self.run)

        assert await manager.cleanup(handle) is True
        assert "daemon gone" in caplog.text

    @pytest.mark.asyncio
    async def test_isolated_removes_volume_after_success(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)

        async with manager.isolated(self.tenant, self.run, {"targets.txt": "a"}) as handle:
            assert backend.path_for(handle.name).is_dir()

        assert not backend.path_for(handle.name).exists()

    @pytest.mark.asyncio
    async def test_isolated_removes_volume_when_body_raises(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        name = volume_name(self.tenant, self.run)

        with pytest.raises(RuntimeError, match="container crashed"):
            async with manager.isolated(self.tenant, self.run, {"targets.txt": "a"}):
                raise RuntimeError("container crashed")

        assert not backend.path_for(name).exists()

    @pytest.mark.asyncio
    async def test_isolated_removes_volume_when_populate_fails(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        backend.remove = AsyncMock(wraps=backend.remove)
        name = volume_name(self.tenant, self.run)

        with pytest.raises(ValidationError):
            async with manager.isolated(self.tenant, self.run, {"../x": "a"}):
                pytest.fail("body must not run")

        assert backend.remove.await_count == 1
        assert not backend.path_for(name).exists()

    @pytest.mark.asyncio
    async def test_isolated_cleans_up_on_cancellation(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        name = volume_name(self.tenant, self.run)
        entered = asyncio.Event()

        async def body() -> None:
            async with manager.isolated(self.tenant, self.run, {"a.txt": "a"}):
                entered.set()
                await asyncio.sleep(60)

        task = asyncio.create_task(body())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not backend.path_for(name).exists()

    @pytest.mark.asyncio
    async def test_overlapping_holders_share_the_volume(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        backend.remove = AsyncMock(wraps=backend.remove)
        first_done = asyncio.Event()
        second_entered = asyncio.Event()
        seen_by_second: list[bool] = []

        async def first() -> None:
            async with manager.isolated(self.tenant, self.run, {"a.txt": "a"}):
                await second_entered.wait()
            first_done.set()

        async def second() -> None:
            async with manager.isolated(self.tenant, self.run, {"b.txt": "b"}) as handle:
                second_entered.set()
                await first_done.wait()
                seen_by_second.append(await backend.exists(handle.name))

        await asyncio.gather(first(), second())

        assert seen_by_second == [True]
        assert backend.remove.await_count == 1
        assert not backend.path_for(volume_name(self.tenant, self.run)).exists()

    @pytest.mark.asyncio
    async def test_each_lease_released_once(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        first = await manager.allocate(self.tenant, self.run)
        second = await manager.allocate(self.tenant, self.run)
        assert manager.holders(first.name) == 2

        assert await manager.cleanup(first) is True
        assert await manager.cleanup(first) is False
        assert backend.path_for(first.name).is_dir()

        assert await manager.cleanup(second) is True
        assert manager.holders(first.name) == 0
        assert not backend.path_for(first.name).exists()

    @pytest.mark.asyncio
    async def test_bookkeeping_does_not_grow_across_runs(self, tmp_path: Path):
        manager, _ = self._manager(tmp_path)

        for i in range(50):
            async with manager.isolated(self.tenant, f"run-{i}", {"a.txt": "a"}):
                pass

        assert manager._handles == {}
        assert manager._leases == {}
        assert manager._locks == {}

    @pytest.mark.asyncio
    async def test_reallocate_after_cleanup(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        handle = await manager.allocate(self.tenant, self.run)
        await manager.cleanup(handle)

        again = await manager.allocate(self.tenant, self.run)

        assert backend.path_for(again.name).is_dir()
        assert await manager.cleanup(again) is True

    @pytest.mark.asyncio
    async def test_cleanup_orphaned(self, tmp_path: Path):
        manager, backend = self._manager(tmp_path)
        old = (datetime.now(UTC) - timedelta(hours=48)).isoformat()
        fresh = datetime.now(UTC).isoformat()
        await backend.create("old", {LABEL_MANAGED: "true", LABEL_CREATED: old})
        await backend.create("fresh", {LABEL_MANAGED: "true", LABEL_CREATED: fresh})
        await backend.create("foreign", {LABEL_CREATED: old})

        removed = await manager.cleanup_orphaned(older_than_hours=24)

        assert removed == 1
        assert not backend.path_for("old").exists()
        assert backend.path_for("fresh").exists()
        assert backend.path_for("foreign").exists()


class TestVolumeInfo:
    def test_created_at_parsing(self):
        assert VolumeInfo("v", {LABEL_CREATED: "2024-01-01T00:00:00"}).created_at == datetime(
            2024, 1, 1, tzinfo=UTC
        )
        assert VolumeInfo("v", {LABEL_CREATED: "yesterday"}).created_at is None
        assert VolumeInfo("v").created_at is None


def _completed(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    return proc


class TestDockerVolumeBackend:
    @pytest.mark.asyncio
    async def test_write_file_streams_content_over_stdin(self):
        backend = DockerVolumeBackend(docker_bin="docker", helper_image="alpine:3")
        proc = _completed()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as exec_mock:
            await backend.write_file("vol", "dir/targets.txt", b"example.com")

        args = exec_mock.await_args.args
        assert args[0] == "docker"
        assert "vol:/data" in args
        assert args[-1] == "/data/dir/targets.txt"
        assert b"example.com" not in b" ".join(a.encode() for a in args)
        proc.communicate.assert_awaited_once_with(input=b"example.com")

    @pytest.mark.asyncio
    async def test_create_passes_labels(self):
        backend = DockerVolumeBackend(docker_bin="docker")
        with patch(
            "asyncio.create_subprocess_exec", AsyncMock(return_value=_completed())
        ) as exec_mock:
            await backend.create("vol", {LABEL_MANAGED: "true"})

        assert exec_mock.await_args.args[1:] == (
            "volume",
            "create",
            "--label",
            f"{LABEL_MANAGED}=true",
            "vol",
        )

    @pytest.mark.asyncio
    async def test_remove_failure_is_service_error(self):
        backend = DockerVolumeBackend(docker_bin="docker")
        proc = _completed(returncode=1, stderr=b"volume is in use")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(ServiceError, match="volume is in use"):
                await backend.remove("vol")

    @pytest.mark.asyncio
    async def test_missing_docker_cli(self):
        backend = DockerVolumeBackend(docker_bin="/nonexistent/docker")
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError())):
            with pytest.raises(ConfigurationError):
                await backend.exists("vol")

    @pytest.mark.asyncio
    async def test_list_volumes_parses_json_lines(self):
        lines = [
            json.dumps({"Name": "a", "Labels": f"{LABEL_MANAGED}=true,{LABEL_CREATED}=2024-01-01"}),
            "garbage",
        ]
        proc = _completed(stdout="\n".join(lines).encode())
        backend = DockerVolumeBackend(docker_bin="docker")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            volumes = await backend.list_volumes({LABEL_MANAGED: "true"})

        assert [v.name for v in volumes] == ["a"]
        assert volumes[0].labels[LABEL_MANAGED] == "true"
