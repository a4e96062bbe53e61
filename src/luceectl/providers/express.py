"""Provider for the Lucee Express bundle managed by luceectl."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from ..artifacts import EXPRESS_REQUIRED
from ..compat import uses_jakarta_engine
from ..instance_dir import BuildRequest
from ..lifecycle import ProcessManager
from ..server_config import ServerConfig
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
from .catalina import catalina_launch_plan, validate_catalina_home

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ExpressProvider:
    """Run Lucee Express with a per-instance ``CATALINA_BASE``."""

    context: ProviderContext
    runtime_type: ClassVar[str] = "lucee-express"

    def check_installation(self, config: ServerConfig) -> Path | None:
        """Return the unpacked Express home when it is already cached."""
        home = self.context.artifacts.express_dir(config.lucee_version)
        if not all((home / relative).exists() for relative in EXPRESS_REQUIRED):
            return None
        validate_catalina_home(home, f"Lucee Express {config.lucee_version}")
        return home

    def detect_container_major(self, home: Path) -> int | None:
        """Lucee Express ships a matching Tomcat, so nothing is detected."""
        return None

    def prepare(self, request: StartRequest) -> Preparation:
        """Ensure the Express bundle and lay out the instance directory."""
        config = request.config
        artifact = self.context.artifacts.ensure_express(config.lucee_version, dry_run=request.dry_run)
        actions: list[str] = []
        if artifact.downloaded:
            actions.append(f"download {artifact.source}")
        home = self.check_installation(config)
        if home is None:
            if request.dry_run:
                return Preparation(
                    runtime_type=self.runtime_type,
                    actions=tuple(actions),
                    warnings=(
                        f"Lucee Express {config.lucee_version} is not downloaded yet; "
                        "the instance directory preview is skipped.",
                    ),
                )
            raise InstallationError(
                f"Lucee Express {config.lucee_version} is incomplete at {artifact.path}."
            )

        build = self.context.builder.build(
            BuildRequest(
                config=config,
                project_dir=request.project_dir,
                instance_dir=request.instance_dir,
                vendor_home=home,
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


__all__ = ["ExpressProvider"]
