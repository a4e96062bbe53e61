"""Provider for an existing Tomcat installation."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..compat import uses_jakarta_engine, validate_compatibility
from ..instance_dir import BuildRequest
from ..lifecycle import ProcessManager, run_command
from ..server_config import ServerConfig, TomcatRuntime
from ..state import InstanceRecord, ServerRepository
from .base import (
    InstallationError,
    Preparation,
    ProviderContext,
    ServerInstance,
    StartRequest,
    launch_process,
    stop_process,
)
from .catalina import catalina_launch_plan, detect_tomcat_major, validate_catalina_home

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TomcatProvider:
    """Layer a Lucee ``CATALINA_BASE`` over a user supplied ``CATALINA_HOME``."""

    context: ProviderContext
    runtime_type: ClassVar[str] = "tomcat"

    def catalina_home(self, config: ServerConfig) -> Path:
        """Return ``runtime.catalinaHome`` or ``$CATALINA_HOME``."""
        runtime = config.runtime
        configured = runtime.catalina_home if isinstance(runtime, TomcatRuntime) else None
        value = configured or self.context.env.get("CATALINA_HOME")
        if not value:
            raise InstallationError(
                "The tomcat runtime needs runtime.catalinaHome in lucee.json "
                "or the CATALINA_HOME environment variable."
            )
        return Path(value).expanduser()

    def check_installation(self, config: ServerConfig) -> Path:
        """Validate the Tomcat installation and return its home."""
        home = self.catalina_home(config)
        validate_catalina_home(home)
        return home

    def detect_container_major(self, home: Path) -> int | None:
        """Return the Tomcat major version or ``None`` when it cannot be read."""
        return detect_tomcat_major(
            home,
            env=self.context.env,
            timeout=self.context.detect_timeout,
            runner=self._run_command,
        )

    def prepare(self, request: StartRequest) -> Preparation:
        """Check compatibility, fetch the Lucee jar and build ``CATALINA_BASE``."""
        config = request.config
        home = self.check_installation(config)
        major = self.detect_container_major(home)
        compatibility = validate_compatibility(
            "tomcat", major, config.lucee_version, matrix=self.context.compat
        )
        jar = self.context.artifacts.ensure_jar(
            config.lucee_version, config.lucee.variant, dry_run=request.dry_run
        )
        actions = [f"download {jar.source}"] if jar.downloaded else []
        build = self.context.builder.build(
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
            )
        )
        plan = catalina_launch_plan(
            config,
            catalina_home=home,
            catalina_base=request.instance_dir,
            build=build,
            base_env=self.context.env,
        )
        return Preparation(
            runtime_type=self.runtime_type,
            build=build,
            launch=plan,
            compatibility=compatibility,
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
        """Run ``catalina.sh run`` for the prepared instance."""
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
        """Terminate the Catalina JVM."""
        return stop_process(record, repository=repository, processes=processes)

    # Internal helpers -------------------------------------------------
    def _run_command(self, args: list[str], **kwargs: object) -> object:
        return run_command(args, **kwargs)  # type: ignore[arg-type]


__all__ = ["TomcatProvider"]
