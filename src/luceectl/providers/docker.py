"""Provider that runs Lucee from a container image through the docker CLI."""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..instance_dir import BuildRequest
from ..lifecycle import ProcessManager, ReadinessTimeoutError
from ..server_config import DockerRuntime, ServerConfig
from ..state import CONTAINER_MARKER, CONTAINER_PID, InstanceRecord, ServerRepository
from .base import (
    Preparation,
    ProviderContext,
    ProviderError,
    ServerInstance,
    StartRequest,
    run_tool,
    server_environment,
)

LOGGER = logging.getLogger(__name__)

CONTAINER_HTTP_PORT = 8080
CONTAINER_APP_PATH = "/app"
CONTAINER_SERVER_PATH = "/opt/lucee/server/lucee-server"
_MISSING_CONTAINER = "No such container"


def container_name(config: ServerConfig) -> str:
    """Return ``runtime.containerName`` or ``luceectl-<name>``."""
    runtime = config.runtime
    if isinstance(runtime, DockerRuntime) and runtime.container_name and runtime.container_name.strip():
        return runtime.container_name.strip()
    return f"luceectl-{config.name}"


def docker_run_args(
    docker_bin: str,
    config: ServerConfig,
    *,
    name: str,
    project_dir: Path,
    instance_dir: Path,
    env: Mapping[str, str],
) -> list[str]:
    """Return the ``docker run`` command line for *config*."""
    runtime = config.runtime if isinstance(config.runtime, DockerRuntime) else DockerRuntime()
    args = [
        docker_bin,
        "run",
        "-d",
        "--name",
        name,
        "-p",
        f"{config.port}:{CONTAINER_HTTP_PORT}",
        "-v",
        f"{project_dir.resolve()}:{CONTAINER_APP_PATH}",
        "-v",
        f"{instance_dir.resolve() / 'lucee-server'}:{CONTAINER_SERVER_PATH}",
    ]
    for key, value in env.items():
        args.extend(["-e", f"{key}={value}"])
    image = runtime.image.strip() or "lucee/lucee"
    tag = runtime.tag.strip() or "latest"
    args.append(f"{image}:{tag}")
    return args


@dataclass(slots=True)
class DockerProvider:
    """Start and stop a Lucee container for a project."""

    context: ProviderContext
    runtime_type: ClassVar[str] = "docker"

    def check_installation(self, config: ServerConfig) -> Path | None:
        """Return the docker binary path; raise :class:`ProviderError` when missing."""
        found = shutil.which(self.context.docker_bin)
        if found is None:
            raise ProviderError(
                f"'{self.context.docker_bin}' was not found on PATH; "
                "install Docker or choose another runtime."
            )
        return Path(found)

    def detect_container_major(self, home: Path) -> int | None:
        """Images pair Lucee with their own container, so nothing is detected."""
        return None

    def prepare(self, request: StartRequest) -> Preparation:
        """Create the mounted folders and compute the ``docker run`` command."""
        config = request.config
        warnings: list[str] = []
        docker = self.check_installation(config)
        if request.foreground:
            warnings.append("The docker runtime does not support foreground mode; starting in background.")
        if config.https.enabled:
            warnings.append("HTTPS settings are not applied to the docker runtime.")

        build = self.context.builder.build_container(
            BuildRequest(
                config=config,
                project_dir=request.project_dir,
                instance_dir=request.instance_dir,
                active_agents=request.active_agents,
                force_replace=request.force_replace,
                dry_run=request.dry_run,
            )
        )
        name = container_name(config)
        env = server_environment(config, build.extensions, {})
        args = docker_run_args(
            str(docker),
            config,
            name=name,
            project_dir=request.project_dir,
            instance_dir=request.instance_dir,
            env=env,
        )
        return Preparation(
            runtime_type=self.runtime_type,
            build=build,
            markers={CONTAINER_MARKER: name},
            warnings=tuple(warnings),
            actions=(f"docker rm -f {name}", " ".join(_redact(args))),
        )

    def launch(
        self,
        request: StartRequest,
        preparation: Preparation,
        *,
        repository: ServerRepository,
        processes: ProcessManager,
        on_launched: Callable[[], None] | None = None,
    ) -> ServerInstance | None:
        """Run the container detached and wait for its mapped HTTP port."""
        config = request.config
        name = preparation.markers[CONTAINER_MARKER]
        docker = str(self.check_installation(config))
        for warning in preparation.warnings:
            LOGGER.warning(warning)

        repository.record_start(
            config.name,
            project_dir=request.project_dir,
            environment=request.environment,
            runtime_type=self.runtime_type,
        )
        for marker, value in preparation.markers.items():
            repository.write_marker(config.name, marker, value)

        self._run_command([docker, "rm", "-f", name])
        env = server_environment(
            config, preparation.build.extensions if preparation.build else None, {}
        )
        args = docker_run_args(
            docker,
            config,
            name=name,
            project_dir=request.project_dir,
            instance_dir=request.instance_dir,
            env=env,
        )
        result = self._run_command(args)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            raise ProviderError(f"docker run failed for {name}: {message or 'unknown error'}")
        repository.write_pid(config.name, CONTAINER_PID, config.port)
        LOGGER.info("Started container %s for %s", name, request.project_dir)
        if on_launched is not None:
            on_launched()

        try:
            processes.wait_until_ready("127.0.0.1", config.port)
        except ReadinessTimeoutError:
            self._run_command([docker, "rm", "-f", name])
            repository.remove_pid(config.name)
            raise
        return ServerInstance(
            name=config.name,
            pid=CONTAINER_PID,
            port=config.port,
            instance_dir=request.instance_dir,
            project_dir=request.project_dir.resolve(),
            runtime_type=self.runtime_type,
        )

    def stop(
        self,
        record: InstanceRecord,
        *,
        repository: ServerRepository,
        processes: ProcessManager,
    ) -> bool:
        """Stop and remove the container; a missing container is not an error."""
        name = record.container_name or f"luceectl-{record.name}"
        stopped = False
        if record.pid is not None:
            result = self._run_command([self.context.docker_bin, "stop", name])
            if result.returncode == 0:
                stopped = True
            elif _MISSING_CONTAINER not in (result.stderr or ""):
                raise ProviderError(f"docker stop {name} failed: {(result.stderr or '').strip()}")
            removed = self._run_command([self.context.docker_bin, "rm", name])
            if removed.returncode != 0 and _MISSING_CONTAINER not in (removed.stderr or ""):
                LOGGER.warning("docker rm %s failed: %s", name, (removed.stderr or "").strip())
        repository.remove_pid(record.name)
        return stopped

    # Internal helpers -------------------------------------------------
    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return run_tool(args)


def _redact(args: Sequence[str]) -> list[str]:
    redacted: list[str] = []
    for arg in args:
        if arg.startswith("LUCEE_ADMIN_PASSWORD="):
            redacted.append("LUCEE_ADMIN_PASSWORD=***")
        else:
            redacted.append(arg)
    return redacted


__all__ = ["DockerProvider", "container_name", "docker_run_args"]
