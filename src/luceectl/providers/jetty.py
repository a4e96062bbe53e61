"""Provider for an existing Jetty installation."""
from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..compat import uses_jakarta_engine, validate_compatibility
from ..instance_dir import BuildRequest
from ..lifecycle import LaunchPlan, ProcessManager, run_command
from ..server_config import JettyRuntime, ServerConfig
from ..state import JETTY_STOP_MARKER, JMX_MARKER, InstanceRecord, ServerRepository
from .base import (
    InstallationError,
    Preparation,
    ProviderContext,
    ServerInstance,
    StartRequest,
    launch_process,
    require_directory,
    server_environment,
    stop_process,
)

LOGGER = logging.getLogger(__name__)

JETTY_HOME_MARKER = ".jetty-home"
JETTY_VERSION_PATTERNS = (
    re.compile(r"jetty-server-(\d+)\.\d+"),
    re.compile(r"(?:Jetty|jetty)[^\d]*(\d+)\.\d+\.\d+"),
)
STOP_WAIT_SECONDS = 10


def parse_jetty_major(output: str) -> int | None:
    """Return the Jetty major version found in ``start.jar --version`` output."""
    for pattern in JETTY_VERSION_PATTERNS:
        match = pattern.search(output)
        if match:
            return int(match.group(1))
    return None


def new_stop_key() -> str:
    """Return a fresh ``STOP.KEY`` value."""
    return f"luceectl-{secrets.token_hex(4)}"


@dataclass(slots=True)
class JettyProvider:
    """Run Jetty with the instance directory as ``jetty.base``."""

    context: ProviderContext
    runtime_type: ClassVar[str] = "jetty"

    def jetty_home(self, config: ServerConfig) -> Path:
        """Return ``runtime.jettyHome`` or ``$JETTY_HOME``."""
        runtime = config.runtime
        configured = runtime.jetty_home if isinstance(runtime, JettyRuntime) else None
        value = configured or self.context.env.get("JETTY_HOME")
        if not value:
            raise InstallationError(
                "The jetty runtime needs runtime.jettyHome in lucee.json "
                "or the JETTY_HOME environment variable."
            )
        return Path(value).expanduser()

    def check_installation(self, config: ServerConfig) -> Path:
        """Validate the Jetty installation and return its home."""
        home = require_directory(self.jetty_home(config), "JETTY_HOME")
        if not (home / "start.jar").is_file():
            raise InstallationError(f"start.jar not found in JETTY_HOME: {home}")
        require_directory(home / "lib", "JETTY_HOME/lib")
        require_directory(home / "modules", "JETTY_HOME/modules")
        return home

    def detect_container_major(self, home: Path) -> int | None:
        """Return the Jetty major version or ``None`` when it cannot be read."""
        result = self._run_command(
            [self.context.java_bin, "-jar", str(home / "start.jar"), "--version"],
            timeout=self.context.detect_timeout,
        )
        if result is None:
            return None
        output = f"{getattr(result, 'stdout', '') or ''}\n{getattr(result, 'stderr', '') or ''}"
        return parse_jetty_major(output)

    def prepare(self, request: StartRequest) -> Preparation:
        """Check compatibility, fetch the Lucee jar and build ``JETTY_BASE``."""
        config = request.config
        home = self.check_installation(config)
        major = self.detect_container_major(home)
        compatibility = validate_compatibility(
            "jetty", major, config.lucee_version, matrix=self.context.compat
        )
        jar = self.context.artifacts.ensure_jar(
            config.lucee_version, config.lucee.variant, dry_run=request.dry_run
        )
        actions = [f"download {jar.source}"] if jar.downloaded else []
        build = self.context.builder.build_jetty(
            BuildRequest(
                config=config,
                project_dir=request.project_dir,
                instance_dir=request.instance_dir,
                vendor_home=home,
                lucee_jar=jar.path,
                jakarta=uses_jakarta_engine(config.lucee_version, self.context.compat),
                active_agents=request.active_agents,
                force_replace=request.force_replace,
                dry_run=request.dry_run,
            ),
            jetty_major=major,
        )

        stop_port = config.effective_shutdown_port
        stop_key = new_stop_key()
        base = request.instance_dir
        env = server_environment(config, build.extensions, self.context.env)
        env["JETTY_HOME"] = str(home)
        env["JETTY_BASE"] = str(base)
        plan = LaunchPlan(
            command=(
                self.context.java_bin,
                *build.catalina_opts,
                "-jar",
                str(home / "start.jar"),
                f"jetty.home={home}",
                f"jetty.base={base}",
                f"STOP.PORT={stop_port}",
                f"STOP.KEY={stop_key}",
            ),
            env=env,
            cwd=base,
            stdout_path=base / "logs" / "server.out",
            stderr_path=base / "logs" / "server.err",
        )
        markers = {
            JETTY_STOP_MARKER: f"{stop_port}:{stop_key}",
            JETTY_HOME_MARKER: str(home),
        }
        # JMX flags go on the command line; there is no setenv.sh to read back.
        if config.jmx_port is not None:
            markers[JMX_MARKER] = str(config.jmx_port)
        return Preparation(
            runtime_type=self.runtime_type,
            build=build,
            launch=plan,
            compatibility=compatibility,
            markers=markers,
            actions=tuple(actions),
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
        """Run ``start.jar`` for the prepared instance."""
        return launch_process(
            request,
            preparation,
            repository=repository,
            processes=processes,
            on_launched=on_launched,
        )

    def stop(
        self,
        record: InstanceRecord,
        *,
        repository: ServerRepository,
        processes: ProcessManager,
    ) -> bool:
        """Ask Jetty to stop through its stop port, then make sure the PID is gone."""
        stop_info = repository.read_marker(record.name, JETTY_STOP_MARKER)
        home = repository.read_marker(record.name, JETTY_HOME_MARKER)
        requested = False
        if record.running and stop_info and home:
            port, _, key = stop_info.partition(":")
            result = self._run_command(
                [
                    self.context.java_bin,
                    "-jar",
                    str(Path(home) / "start.jar"),
                    "--stop",
                    f"STOP.PORT={port}",
                    f"STOP.KEY={key}",
                    f"STOP.WAIT={STOP_WAIT_SECONDS}",
                ],
                timeout=STOP_WAIT_SECONDS + 5,
            )
            requested = result is not None and getattr(result, "returncode", 1) == 0
            if not requested:
                LOGGER.warning("Jetty stop request for %s failed; terminating the process.", record.name)
        terminated = stop_process(record, repository=repository, processes=processes)
        return requested or terminated

    # Internal helpers -------------------------------------------------
    def _run_command(self, args: list[str], **kwargs: object) -> object:
        return run_command(args, **kwargs)  # type: ignore[arg-type]


__all__ = ["JETTY_HOME_MARKER", "JettyProvider", "new_stop_key", "parse_jetty_major"]
