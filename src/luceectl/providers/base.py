"""Shared types and the process launch pipeline used by runtime providers."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..artifacts import ArtifactCache
from ..compat import CompatibilityResult, ServletCompatibility
from ..extensions import ExtensionPlan
from ..instance_dir import BuildResult, InstallationError, InstanceDirectoryBuilder
from ..jvm import AgentOverrides
from ..lifecycle import LaunchPlan, LifecycleError, ProcessManager, ReadinessTimeoutError
from ..server_config import ServerConfig
from ..state import InstanceRecord, ServerRepository

LOGGER = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Raised when a runtime backend tool fails."""


@dataclass(frozen=True)
class ProviderContext:
    """Collaborators every provider needs."""

    builder: InstanceDirectoryBuilder
    artifacts: ArtifactCache
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    java_bin: str = "java"
    docker_bin: str = "docker"
    detect_timeout: float = 10.0
    compat: ServletCompatibility | None = None


@dataclass(frozen=True)
class StartRequest:
    """One resolved start: ports are final and the instance name is settled."""

    config: ServerConfig
    project_dir: Path
    instance_dir: Path
    environment: str | None = None
    agent_overrides: AgentOverrides = field(default_factory=AgentOverrides)
    active_agents: tuple[str, ...] = ()
    foreground: bool = False
    force_replace: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class Preparation:
    """Everything a provider computed before spawning anything."""

    runtime_type: str
    build: BuildResult | None = None
    launch: LaunchPlan | None = None
    compatibility: CompatibilityResult | None = None
    markers: Mapping[str, str] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    actions: tuple[str, ...] = ()

    @property
    def all_warnings(self) -> list[str]:
        """Return provider warnings followed by builder warnings."""
        warnings = list(self.warnings)
        if self.build is not None:
            warnings.extend(w for w in self.build.warnings if w not in warnings)
        if self.compatibility is not None:
            warnings.extend(w for w in self.compatibility.warnings if w not in warnings)
        return warnings

    @property
    def all_actions(self) -> list[str]:
        """Return provider actions followed by builder actions."""
        actions = list(self.actions)
        if self.build is not None:
            actions.extend(self.build.actions)
        return actions


@dataclass(frozen=True)
class ServerInstance:
    """A server that answered its readiness probe."""

    name: str
    pid: int
    port: int
    instance_dir: Path
    project_dir: Path
    runtime_type: str

    @property
    def is_container(self) -> bool:
        """Return whether the server runs inside a container."""
        return self.pid < 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "pid": self.pid,
            "port": self.port,
            "instance_dir": str(self.instance_dir),
            "project_dir": str(self.project_dir),
            "runtime": self.runtime_type,
        }


class RuntimeProvider(Protocol):
    """Interface shared by the four runtime backends."""

    runtime_type: str

    def check_installation(self, config: ServerConfig) -> Path | None:
        """Return the validated installation home (``None`` when not applicable)."""
        ...

    def detect_container_major(self, home: Path) -> int | None:
        """Return the container's major version, or ``None`` when unknown."""
        ...

    def prepare(self, request: StartRequest) -> Preparation:
        """Validate the installation and build the instance directory."""
        ...

    def launch(
        self,
        request: StartRequest,
        preparation: Preparation,
        *,
        repository: ServerRepository,
        processes: ProcessManager,
        on_launched: Callable[[], None] | None = None,
    ) -> ServerInstance | None:
        """Launch the server described by *preparation*."""
        ...

    def stop(
        self,
        record: InstanceRecord,
        *,
        repository: ServerRepository,
        processes: ProcessManager,
    ) -> bool:
        """Stop the server for *record*; return whether anything was running."""
        ...


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def server_environment(
    config: ServerConfig,
    extensions: ExtensionPlan | None,
    base_env: Mapping[str, str],
) -> dict[str, str]:
    """Return the child environment: parent env, Lucee settings, then ``envVars``."""
    env = dict(base_env)
    if config.admin.password:
        env["LUCEE_ADMIN_PASSWORD"] = config.admin.password
    if extensions is not None and extensions.env_value:
        env["LUCEE_EXTENSIONS"] = extensions.env_value
    for key, value in config.env_vars.items():
        if key.strip():
            env[key] = value
    return env


def require_directory(path: Path, label: str) -> Path:
    """Return *path* when it is a directory, else raise :class:`InstallationError`."""
    if not path.is_dir():
        raise InstallationError(f"{label} does not exist or is not a directory: {path}")
    return path


def start_server(
    provider: RuntimeProvider,
    request: StartRequest,
    *,
    repository: ServerRepository,
    processes: ProcessManager,
    on_prepared: Callable[[Preparation], None] | None = None,
    on_launched: Callable[[], None] | None = None,
) -> tuple[Preparation, ServerInstance | None]:
    """Prepare and launch *request* through *provider*.

    A dry run stops after preparation. Any failure during preparation leaves
    nothing spawned.
    """
    preparation = provider.prepare(request)
    if on_prepared is not None:
        on_prepared(preparation)
    if request.dry_run:
        return preparation, None
    instance = provider.launch(
        request,
        preparation,
        repository=repository,
        processes=processes,
        on_launched=on_launched,
    )
    return preparation, instance


def launch_process(
    request: StartRequest,
    preparation: Preparation,
    *,
    repository: ServerRepository,
    processes: ProcessManager,
    on_launched: Callable[[], None] | None = None,
) -> ServerInstance | None:
    """Spawn a JVM-based server, record it and wait for it.

    Background launches return once the HTTP listener answers; a readiness
    timeout kills the process, removes ``server.pid`` and leaves the
    instance directory for inspection. Foreground launches block until the
    server exits and return ``None``.
    """
    plan = preparation.launch
    if plan is None:
        raise ProviderError("Provider produced no launch plan.")
    config = request.config
    name = config.name
    repository.record_start(
        name,
        project_dir=request.project_dir,
        environment=request.environment,
        runtime_type=preparation.runtime_type,
    )
    for marker, value in preparation.markers.items():
        repository.write_marker(name, marker, value)

    process = processes.launch(plan, foreground=request.foreground)
    repository.write_pid(name, process.pid, config.port)
    LOGGER.info("Started %s (pid %s) for %s", name, process.pid, request.project_dir)
    if on_launched is not None:
        on_launched()

    if request.foreground:
        processes.run_foreground(process, on_exit=lambda: repository.remove_pid(name))
        return None

    try:
        processes.wait_until_ready("127.0.0.1", config.port, process=process)
    except ReadinessTimeoutError:
        processes.stop_process(process)
        repository.remove_pid(name)
        raise
    except LifecycleError:
        repository.remove_pid(name)
        raise
    return ServerInstance(
        name=name,
        pid=process.pid,
        port=config.port,
        instance_dir=request.instance_dir,
        project_dir=request.project_dir.resolve(),
        runtime_type=preparation.runtime_type,
    )


def stop_process(
    record: InstanceRecord,
    *,
    repository: ServerRepository,
    processes: ProcessManager,
) -> bool:
    """Terminate the PID recorded for *record* and clear ``server.pid``."""
    stopped = False
    if record.pid is not None and record.pid > 0:
        stopped = processes.terminate(record.pid)
    repository.remove_pid(record.name)
    return stopped


def run_tool(
    args: Sequence[str],
    *,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    dry_run: bool = False,
) -> subprocess.CompletedProcess[str]:
    """Run a backend tool, mapping a missing binary to :class:`ProviderError`."""
    if dry_run:
        return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
    try:
        return subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as exc:
        raise ProviderError(f"{args[0]} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ProviderError(f"{' '.join(args)} timed out after {timeout}s") from exc


__all__ = [
    "InstallationError",
    "Preparation",
    "ProviderContext",
    "ProviderError",
    "RuntimeProvider",
    "ServerInstance",
    "StartRequest",
    "launch_process",
    "require_directory",
    "run_tool",
    "server_environment",
    "start_server",
    "stop_process",
]
