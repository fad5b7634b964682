"""
Isolated per-run volumes.

Each container invocation gets a private scratch volume scoped to
(tenant, run). Inputs are written into it as files, it is mounted into the
container, and it is removed when the invocation ends, whatever the outcome.

Lifecycle:
    handle = await manager.allocate(tenant_id, run_id)
    await manager.populate(handle, {"targets.txt": "example.com"})
    mount = manager.mount_spec(handle, "/inputs", read_only=True)
    ...
    await manager.cleanup(handle)

or, preferably:

    async with manager.isolated(tenant_id, run_id, files) as handle:
        ...
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol

from secflow.config import get_docker_bin, get_helper_image
from secflow.errors import ConfigurationError, ServiceError, ValidationError

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
SAFE_PATH_PATTERN = re.compile(r"^[a-zA-Z0-9._/-]+$")

LABEL_TENANT = "secflow.tenant"
LABEL_RUN = "secflow.run"
LABEL_CREATED = "secflow.created"
LABEL_MANAGED = "secflow.managed"

VOLUME_MOUNT_POINT = "/data"


def validate_identifier(kind: str, value: str) -> str:
    """Tenant and run ids end up in volume names and labels; keep them plain."""
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"Invalid {kind}: {value!r}. Only letters, digits, '_' and '-' are allowed",
            field_errors={kind: ["must match ^[a-zA-Z0-9_-]+$"]},
        )
    return value


def volume_name(tenant_id: str, run_id: str) -> str:
    """Deterministic, collision-resistant volume name for a (tenant, run) pair.

    The readable prefix alone is ambiguous once ids contain '-' (tenant "a-run-b"
    vs run "b"), so a digest of the exact pair is appended.
    """
    validate_identifier("tenant_id", tenant_id)
    validate_identifier("run_id", run_id)
    digest = hashlib.sha256(f"{tenant_id}\0{run_id}".encode()).hexdigest()[:12]
    return f"tenant-{tenant_id}-run-{run_id}-{digest}"


def validate_relative_path(path: str) -> str:
    """Return ``path`` if it is safe to create inside a volume, else raise.

    Rejects absolute paths, '..' segments, hidden files, empty segments and
    characters outside [A-Za-z0-9._/-].
    """
    problems = path_problems(path)
    if problems:
        raise ValidationError(
            f"Unsafe file path {path!r}: {problems[0]}",
            field_errors={path: problems},
        )
    return path


def path_problems(path: str) -> list[str]:
    if not isinstance(path, str) or not path:
        return ["path must be a non-empty string"]
    problems: list[str] = []
    if path.startswith("/") or os.path.isabs(path):
        problems.append("absolute paths are not allowed")
    segments = path.split("/")
    if ".." in segments or ".." in path:
        problems.append("parent directory traversal is not allowed")
    if not SAFE_PATH_PATTERN.match(path):
        problems.append("path contains unsafe characters")
    if any(segment.startswith(".") and segment != ".." for segment in segments if segment):
        problems.append("hidden files are not allowed")
    if not path.startswith("/") and any(segment == "" for segment in segments):
        problems.append("empty path segments are not allowed")
    return problems


@dataclass(frozen=True)
class MountDescriptor:
    """Volume mount consumed by the container runner."""

    source: str
    target: str
    read_only: bool = False

    def to_dict(self) -> dict:
        return {"source": self.source, "target": self.target, "readOnly": self.read_only}


@dataclass(frozen=True)
class VolumeHandle:
    name: str
    tenant_id: str
    run_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    # Identifies one holder; handles for the same volume compare equal
    lease: str = field(default="", compare=False)


@dataclass
class VolumeInfo:
    name: str
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def created_at(self) -> datetime | None:
        created = self.labels.get(LABEL_CREATED)
        if not created:
            return None
        try:
            when = datetime.fromisoformat(created)
        except ValueError:
            return None
        return when if when.tzinfo else when.replace(tzinfo=UTC)


class VolumeBackend(Protocol):
    """Storage that actually holds volume contents."""

    async def create(self, name: str, labels: dict[str, str]) -> None: ...

    async def exists(self, name: str) -> bool: ...

    async def write_file(self, name: str, path: str, content: bytes) -> None: ...

    async def read_file(self, name: str, path: str) -> bytes | None: ...

    async def remove(self, name: str) -> None: ...

    async def list_volumes(self, labels: dict[str, str]) -> list[VolumeInfo]: ...


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class DockerVolumeBackend:
    """Docker named volumes, driven through the docker CLI.

    File contents are streamed through a short-lived helper container over
    stdin, so nothing user-controlled is ever placed on a command line except
    the (already validated) relative path.
    """

    def __init__(self, docker_bin: str | None = None, helper_image: str | None = None):
        self.docker_bin = docker_bin or get_docker_bin()
        self.helper_image = helper_image or get_helper_image()

    async def _docker(self, *args: str, stdin: bytes | None = None) -> tuple[int, bytes, bytes]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_bin,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Docker CLI not found: {self.docker_bin}", config_key="docker.bin"
            ) from e
        stdout, stderr = await proc.communicate(input=stdin)
        return proc.returncode or 0, stdout, stderr

    async def create(self, name: str, labels: dict[str, str]) -> None:
        args = ["volume", "create"]
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]
        code, _, stderr = await self._docker(*args, name)
        if code != 0:
            raise ServiceError(
                f"Failed to create volume {name}: {stderr.decode(errors='replace').strip()}"
            )

    async def exists(self, name: str) -> bool:
        code, _, _ = await self._docker("volume", "inspect", name)
        return code == 0

    async def write_file(self, name: str, path: str, content: bytes) -> None:
        target = f"{VOLUME_MOUNT_POINT}/{path}"
        code, _, stderr = await self._docker(
            "run",
            "--rm",
            "-i",
            "--network",
            "none",
            "-v",
            f"{name}:{VOLUME_MOUNT_POINT}",
            "--entrypoint",
            "sh",
            self.helper_image,
            "-c",
            'mkdir -p "$(dirname "$1")" && cat > "$1"',
            "sh",
            target,
            stdin=content,
        )
        if code != 0:
            raise ServiceError(
                f"Failed to write {path} to volume {name}: {stderr.decode(errors='replace').strip()}"
            )

    async def read_file(self, name: str, path: str) -> bytes | None:
        code, stdout, _ = await self._docker(
            "run",
            "--rm",
            "--network",
            "none",
            "-v",
            f"{name}:{VOLUME_MOUNT_POINT}:ro",
            "--entrypoint",
            "cat",
            self.helper_image,
            f"{VOLUME_MOUNT_POINT}/{path}",
        )
        return stdout if code == 0 else None

    async def remove(self, name: str) -> None:
        code, _, stderr = await self._docker("volume", "rm", "-f", name)
        if code != 0:
            raise ServiceError(
                f"Failed to remove volume {name}: {stderr.decode(errors='replace').strip()}"
            )

    async def list_volumes(self, labels: dict[str, str]) -> list[VolumeInfo]:
        args = ["volume", "ls", "--format", "{{json .}}"]
        for key, value in labels.items():
            args += ["--filter", f"label={key}={value}"]
        code, stdout, stderr = await self._docker(*args)
        if code != 0:
            raise ServiceError(f"Failed to list volumes: {stderr.decode(errors='replace').strip()}")

        volumes: list[VolumeInfo] = []
        for line in stdout.decode(errors="replace").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Skipping unparseable docker volume entry: {line[:200]}")
                continue
            volumes.append(VolumeInfo(name=entry.get("Name", ""), labels=_parse_labels(entry.get("Labels"))))
        return volumes


def _parse_labels(raw: str | dict | None) -> dict[str, str]:
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    labels: dict[str, str] = {}
    for pair in (raw or "").split(","):
        if "=" in pair:
            key, value = pair.split("=", 1)
            labels[key.strip()] = value.strip()
    return labels


class LocalVolumeBackend:
    """Directory-backed volumes for hosts without a container daemon, and tests."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self._data_dir = self.root / "volumes"
        self._label_dir = self.root / "labels"
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._label_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        return self._data_dir / name

    def _secure_path(self, name: str, path: str) -> Path:
        volume_dir = os.path.abspath(self.path_for(name))
        final_path = os.path.abspath(os.path.join(volume_dir, path))
        try:
            common_prefix = os.path.commonpath([final_path, volume_dir])
        except ValueError as err:
            raise ValidationError(f"Path '{path}' is outside the volume") from err
        if common_prefix != volume_dir:
            raise ValidationError(f"Path '{path}' is outside the volume")
        return Path(final_path)

    async def create(self, name: str, labels: dict[str, str]) -> None:
        def _create() -> None:
            self.path_for(name).mkdir(parents=True, exist_ok=True)
            label_file = self._label_dir / f"{name}.json"
            if not label_file.exists():
                label_file.write_text(json.dumps(labels), encoding="utf-8")

        await asyncio.to_thread(_create)

    async def exists(self, name: str) -> bool:
        return self.path_for(name).is_dir()

    async def write_file(self, name: str, path: str, content: bytes) -> None:
        if not await self.exists(name):
            raise ServiceError(f"Volume {name} does not exist")
        target = self._secure_path(name, path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

        await asyncio.to_thread(_write)

    async def read_file(self, name: str, path: str) -> bytes | None:
        target = self._secure_path(name, path)
        if not target.is_file():
            return None
        return await asyncio.to_thread(target.read_bytes)

    async def remove(self, name: str) -> None:
        def _remove() -> None:
            shutil.rmtree(self.path_for(name), ignore_errors=False)
            (self._label_dir / f"{name}.json").unlink(missing_ok=True)

        if not await self.exists(name):
            (self._label_dir / f"{name}.json").unlink(missing_ok=True)
            return
        await asyncio.to_thread(_remove)

    async def list_volumes(self, labels: dict[str, str]) -> list[VolumeInfo]:
        volumes: list[VolumeInfo] = []
        for label_file in sorted(self._label_dir.glob("*.json")):
            try:
                volume_labels = json.loads(label_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                continue
            if all(volume_labels.get(k) == v for k, v in labels.items()):
                volumes.append(VolumeInfo(name=label_file.stem, labels=volume_labels))
        return volumes


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class VolumeManager:
    """Allocates, populates, mounts and removes isolated per-run volumes.

    Every ``allocate`` returns a lease on the (tenant, run) volume. Sibling
    invocations of one run share the volume, and it is removed when the last
    lease is released.
    """

    def __init__(self, backend: VolumeBackend | None = None):
        self.backend: VolumeBackend = backend or DockerVolumeBackend()
        self._handles: dict[str, VolumeHandle] = {}
        self._leases: dict[str, set[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, name: str) -> AsyncIterator[None]:
        # The lock entry lives only while someone holds or waits for it
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                self._locks.pop(name, None)

    def holders(self, name: str) -> int:
        """Number of unreleased leases on ``name``."""
        return len(self._leases.get(name, ()))

    async def allocate(self, tenant_id: str, run_id: str) -> VolumeHandle:
        """Create (or reattach to) the volume for ``(tenant_id, run_id)``."""
        name = volume_name(tenant_id, run_id)
        async with self._locked(name):
            existing = self._handles.get(name)
            if existing is not None:
                lease = replace(existing, lease=uuid.uuid4().hex)
                self._leases[name].add(lease.lease)
                logger.debug(
                    f"Joined volume {name} ({self.holders(name)} holders)", extra={"volume": name}
                )
                return lease

            handle = VolumeHandle(
                name=name, tenant_id=tenant_id, run_id=run_id, lease=uuid.uuid4().hex
            )
            if not await self.backend.exists(name):
                await self.backend.create(
                    name,
                    {
                        LABEL_TENANT: tenant_id,
                        LABEL_RUN: run_id,
                        LABEL_CREATED: handle.created_at.isoformat(),
                        LABEL_MANAGED: "true",
                    },
                )
                logger.info(f"Created isolated volume {name}", extra={"volume": name})
            else:
                logger.debug(f"Reattached to existing volume {name}", extra={"volume": name})

            self._handles[name] = handle
            self._leases[name] = {handle.lease}
            return handle

    async def populate(self, handle: VolumeHandle, files: dict[str, str | bytes]) -> None:
        """Write ``files`` into the volume.

        Every path is validated before the first write, so a single unsafe
        name leaves the volume untouched.
        """
        field_errors: dict[str, list[str]] = {}
        for path in files:
            problems = path_problems(path)
            if problems:
                field_errors[path] = problems
        if field_errors:
            raise ValidationError(
                f"Refusing to populate volume {handle.name}: unsafe file path(s) "
                f"{', '.join(sorted(field_errors))}",
                field_errors=field_errors,
            )

        for path, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            await self.backend.write_file(handle.name, path, data)
        logger.debug(f"Wrote {len(files)} file(s) to {handle.name}", extra={"volume": handle.name})

    def mount_spec(
        self, handle: VolumeHandle, target_path: str, read_only: bool = True
    ) -> MountDescriptor:
        if not target_path.startswith("/"):
            raise ValidationError(f"Mount target must be absolute, got {target_path!r}")
        return MountDescriptor(source=handle.name, target=target_path, read_only=read_only)

    async def read_files(self, handle: VolumeHandle, paths: list[str]) -> dict[str, str]:
        """Read text files back out of the volume; missing files are omitted."""
        contents: dict[str, str] = {}
        for path in paths:
            validate_relative_path(path)
            data = await self.backend.read_file(handle.name, path)
            if data is not None:
                contents[path] = data.decode("utf-8", errors="replace")
        return contents

    async def cleanup(self, handle: VolumeHandle) -> bool:
        """Release the lease. Returns False if it was already released.

        The volume itself is removed when the last lease goes. Removal
        failures are logged and swallowed so they never mask the
        invocation's own result or error.
        """
        async with self._locked(handle.name):
            leases = self._leases.get(handle.name)
            if not leases or handle.lease not in leases:
                return False
            leases.discard(handle.lease)
            if leases:
                logger.debug(
                    f"Released lease on {handle.name}; {len(leases)} holder(s) remain",
                    extra={"volume": handle.name},
                )
                return True

            del self._leases[handle.name]
            self._handles.pop(handle.name, None)
            try:
                await self.backend.remove(handle.name)
            except Exception as e:
                logger.error(
                    f"Failed to clean up volume {handle.name}: {e}",
                    extra={"event": "volume_cleanup_failed", "volume": handle.name},
                )
                return True
        logger.info(f"Removed isolated volume {handle.name}", extra={"volume": handle.name})
        return True

    @asynccontextmanager
    async def isolated(
        self,
        tenant_id: str,
        run_id: str,
        files: dict[str, str | bytes] | None = None,
    ) -> AsyncIterator[VolumeHandle]:
        """Allocate a volume, optionally populate it, and always clean it up."""
        handle = await self.allocate(tenant_id, run_id)
        try:
            if files:
                await self.populate(handle, files)
            yield handle
        finally:
            await asyncio.shield(self.cleanup(handle))

    async def cleanup_orphaned(self, older_than_hours: float = 24) -> int:
        """Remove managed volumes older than the cutoff. Returns the number removed."""
        cutoff = datetime.now(UTC) - timedelta(hours=older_than_hours)
        removed = 0
        for info in await self.backend.list_volumes({LABEL_MANAGED: "true"}):
            created = info.created_at
            if created is None or created >= cutoff:
                continue
            try:
                await self.backend.remove(info.name)
            except Exception as e:
                logger.warning(f"Failed to remove orphaned volume {info.name}: {e}")
                continue
            removed += 1
        if removed:
            logger.info(f"Removed {removed} orphaned volume(s)")
        return removed


_default_manager: VolumeManager | None = None


def get_volume_manager() -> VolumeManager:
    """Process-wide manager backed by docker, created on first use."""
    global _default_manager
    if _default_manager is None:
        _default_manager = VolumeManager()
    return _default_manager


def set_volume_manager(manager: VolumeManager | None) -> None:
    global _default_manager
    _default_manager = manager
