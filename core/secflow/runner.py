"""
Runner abstraction: inline vs. container execution.

A component's runner configuration is a tagged union. ``run_component`` is
the single place that dispatches on it:

- ``InlineRunnerConfig``: the component's own coroutine runs in-process.
- ``ContainerRunnerConfig``: one container is launched through a
  ``ContainerBackend`` and ``ContainerResult`` comes back.

Argument vectors are always built as lists and executed without a shell.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal, Protocol, TypeVar

from secflow.config import get_docker_bin
from secflow.errors import (
    ComponentError,
    ComponentTimeoutError,
    ConfigurationError,
    ServiceError,
    wrap_error,
)
from secflow.volumes import MountDescriptor

if TYPE_CHECKING:
    from secflow.context import ExecutionContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

# docker run exits 125 when the daemon itself could not start the container
DOCKER_RUN_ERROR_EXIT = 125

# Scanner JSONL lines can carry full HTTP requests/responses
STREAM_LINE_LIMIT = 16 * 1024 * 1024

_DAEMON_UNAVAILABLE_PATTERNS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "toomanyrequests",
    "too many requests",
    "context deadline exceeded",
    "connection refused",
    "no space left on device",
)

_IMAGE_MISSING_PATTERNS = (
    "pull access denied",
    "manifest unknown",
    "repository does not exist",
    "invalid reference format",
)


@dataclass(frozen=True)
class InlineRunnerConfig:
    """Run the component's execute logic in the host process."""

    kind: Literal["inline"] = "inline"


@dataclass(frozen=True)
class ContainerRunnerConfig:
    """A single container launch. Built fresh per invocation via ``with_overrides``."""

    image: str
    entrypoint: str | None = None
    command: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    volumes: tuple[MountDescriptor, ...] = ()
    network: str = "bridge"
    timeout_seconds: float = 300
    platform: str | None = None
    kind: Literal["container"] = "container"

    def __post_init__(self) -> None:
        if not self.image:
            raise ValueError("Container runner requires an image")
        if self.timeout_seconds is None or self.timeout_seconds <= 0:
            raise ValueError("Container runner requires a positive timeout_seconds")
        object.__setattr__(self, "command", tuple(str(arg) for arg in self.command))
        object.__setattr__(self, "volumes", tuple(self.volumes))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def with_overrides(
        self,
        *,
        command: Iterable[str] | None = None,
        extra_command: Iterable[str] = (),
        env: Mapping[str, str] | None = None,
        volumes: Iterable[MountDescriptor] | None = None,
        **changes: Any,
    ) -> ContainerRunnerConfig:
        """Copy of this template with invocation-specific arguments."""
        base_command = tuple(command) if command is not None else self.command
        merged_env = {**self.env, **(env or {})}
        return replace(
            self,
            command=base_command + tuple(extra_command),
            env=merged_env,
            volumes=tuple(volumes) if volumes is not None else self.volumes,
            **changes,
        )


RunnerConfig = InlineRunnerConfig | ContainerRunnerConfig


@dataclass(frozen=True)
class ContainerResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def output(self) -> str:
        return self.stdout

    def to_dict(self) -> dict[str, Any]:
        return {"stdout": self.stdout, "stderr": self.stderr, "exitCode": self.exit_code}


def build_docker_args(config: ContainerRunnerConfig, name: str | None = None) -> list[str]:
    """Build the ``docker run`` argument vector (without the binary itself)."""
    args = ["run", "--rm", "-i"]
    if name:
        args += ["--name", name]
    args += ["--network", config.network]
    if config.platform:
        args += ["--platform", config.platform]
    for mount in config.volumes:
        spec = f"{mount.source}:{mount.target}"
        if mount.read_only:
            spec += ":ro"
        args += ["-v", spec]
    for key, value in config.env.items():
        args += ["-e", f"{key}={value}"]
    if config.entrypoint:
        args += ["--entrypoint", config.entrypoint]
    args.append(config.image)
    args.extend(config.command)
    return args


def coerce_container_result(raw: Any) -> ContainerResult:
    """Validate what a backend returned; anything but stdout/stderr/exit code is a ServiceError."""
    if isinstance(raw, ContainerResult):
        return raw
    if isinstance(raw, Mapping):
        exit_code = raw.get("exitCode", raw.get("exit_code"))
        stdout = raw.get("stdout")
        stderr = raw.get("stderr")
        if (
            isinstance(stdout, str)
            and isinstance(stderr, str)
            and isinstance(exit_code, int)
            and not isinstance(exit_code, bool)
        ):
            return ContainerResult(stdout=stdout, stderr=stderr, exit_code=exit_code)
    raise ServiceError(
        "Container backend returned an unexpected result; expected {stdout, stderr, exitCode}",
        details={"result_type": type(raw).__name__},
    )


OutputCallback = Callable[[str, str], None]


class ContainerBackend(Protocol):
    async def run(self, config: ContainerRunnerConfig, on_output: OutputCallback | None = None) -> Any: ...


class DockerCliBackend:
    """Runs containers with the docker CLI via ``asyncio.create_subprocess_exec``."""

    def __init__(self, docker_bin: str | None = None, kill_grace_seconds: float = 10.0):
        self.docker_bin = docker_bin or get_docker_bin()
        self.kill_grace_seconds = kill_grace_seconds

    async def run(
        self, config: ContainerRunnerConfig, on_output: OutputCallback | None = None
    ) -> ContainerResult:
        name = f"secflow-{uuid.uuid4().hex[:12]}"
        args = build_docker_args(config, name=name)
        logger.debug(f"Launching {config.image} as {name}", extra={"image": config.image})

        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_bin,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Docker CLI not found: {self.docker_bin}", config_key="docker.bin"
            ) from e

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        try:
            async with asyncio.timeout(config.timeout_seconds):
                await asyncio.gather(
                    _pump(proc.stdout, stdout_lines, "stdout", on_output),
                    _pump(proc.stderr, stderr_lines, "stderr", on_output),
                )
                exit_code = await proc.wait()
        except TimeoutError as e:
            raise ComponentTimeoutError(
                f"Container {config.image} exceeded its {config.timeout_seconds}s timeout",
                timeout_seconds=config.timeout_seconds,
                details={"image": config.image},
            ) from e
        finally:
            # Early exits must not leave the container running over its volume
            if proc.returncode is None:
                await asyncio.shield(self._kill(name, proc))

        stdout = "".join(stdout_lines)
        stderr = "".join(stderr_lines)

        if exit_code == DOCKER_RUN_ERROR_EXIT:
            lowered = stderr.lower()
            if any(p in lowered for p in _IMAGE_MISSING_PATTERNS):
                raise ConfigurationError(
                    f"Container image {config.image} is not available: {stderr.strip()[:500]}",
                    config_key="image",
                )
            if any(p in lowered for p in _DAEMON_UNAVAILABLE_PATTERNS):
                raise ServiceError(
                    f"Container daemon unavailable: {stderr.strip()[:500]}",
                    details={"exit_code": exit_code},
                )

        return ContainerResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    async def _kill(self, name: str, proc: asyncio.subprocess.Process) -> None:
        try:
            killer = await asyncio.create_subprocess_exec(
                self.docker_bin,
                "kill",
                name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(killer.wait(), timeout=self.kill_grace_seconds)
        except (OSError, TimeoutError) as e:
            logger.warning(f"docker kill {name} failed: {e}")

        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()


async def _pump(
    stream: asyncio.StreamReader | None,
    sink: list[str],
    label: str,
    on_output: OutputCallback | None,
) -> None:
    if stream is None:
        return
    while True:
        try:
            chunk = await stream.readline()
        except ValueError as e:
            # StreamReader raises ValueError once a line outgrows its limit
            raise ServiceError(
                f"Container {label} line exceeds {STREAM_LINE_LIMIT} bytes",
                details={"stream": label},
            ) from e
        if not chunk:
            break
        line = chunk.decode("utf-8", errors="replace")
        sink.append(line)
        if label == "stderr" and line.strip():
            logger.debug(line.rstrip())
        if on_output is not None:
            try:
                on_output(label, line)
            except Exception as e:
                logger.warning(f"Output callback failed: {e}")


_default_backend: ContainerBackend | None = None


def get_container_backend() -> ContainerBackend:
    global _default_backend
    if _default_backend is None:
        _default_backend = DockerCliBackend()
    return _default_backend


def set_container_backend(backend: ContainerBackend | None) -> None:
    global _default_backend
    _default_backend = backend


NoResultsPredicate = Callable[[ContainerResult], bool]


async def run_component(
    runner: RunnerConfig,
    execute_inline: Callable[[Any, ExecutionContext], Awaitable[T]] | None,
    inputs: Any,
    context: ExecutionContext,
    *,
    no_results: NoResultsPredicate | None = None,
    success_exit_codes: Iterable[int] = (0,),
) -> T | ContainerResult:
    """Dispatch to the runner named by ``runner.kind``.

    For containers a non-zero exit code raises ``ServiceError`` unless it is
    listed in ``success_exit_codes`` or ``no_results`` recognizes a documented
    "no results" condition.
    """
    match runner:
        case InlineRunnerConfig():
            if execute_inline is None:
                raise ConfigurationError("Inline runner requires an execute function")
            return await execute_inline(inputs, context)

        case ContainerRunnerConfig():
            backend = context.containers or get_container_backend()
            context.logger.info(f"Starting container {runner.image}")
            context.emit_progress(f"Running {runner.image}", data={"network": runner.network})

            def forward(stream: str, line: str) -> None:
                if stream == "stderr" and line.strip():
                    context.emit_progress(line.strip()[:500], data={"stream": stream})

            started = time.monotonic()
            try:
                raw = await backend.run(runner, on_output=forward)
            except ComponentError:
                raise
            except Exception as e:
                raise wrap_error(e, context=f"Container {runner.image}") from e

            result = coerce_container_result(raw)
            latency_ms = int((time.monotonic() - started) * 1000)
            context.logger.info(
                f"Container {runner.image} exited with code {result.exit_code}",
                extra={"exit_code": result.exit_code, "latency_ms": latency_ms},
            )

            if result.exit_code not in set(success_exit_codes):
                if no_results is not None and no_results(result):
                    context.logger.info("Tool reported no results")
                    return result
                raise ServiceError(
                    f"Container {runner.image} failed with exit code {result.exit_code}: "
                    f"{(result.stderr or result.stdout).strip()[-500:]}",
                    details={"exit_code": result.exit_code, "image": runner.image},
                )
            return result

    raise TypeError(f"Unsupported runner configuration: {type(runner).__name__}")
