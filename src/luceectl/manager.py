"""Orchestration of start, stop and housekeeping for server instances.

:class:`ServerManager` ties together the project configuration, the
instance repository, port resolution, the runtime providers and the process
lifecycle. It owns locking: the global lock plus the instance lock are held
while the identity is settled, ports are chosen and the instance directory
is built, and are released once the PID is recorded so a foreground server
never blocks other invocations.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from pathlib import Path

from .artifacts import ArtifactCache
from .compat import ServletCompatibility, load_servlet_compatibility
from .config import AppConfig
from .instance_dir import InstanceDirectoryBuilder
from .jvm import AgentOverrides, resolve_active_agents
from .lifecycle import ProcessManager
from .locking import LockManager
from .ports import PortResolution, PortResolver, is_port_available
from .providers import (
    Preparation,
    ProviderContext,
    ServerInstance,
    StartRequest,
    provider_for,
    start_server,
)
from .server_config import (
    CONFIG_FILE_NAME,
    LuceeConfig,
    ServerConfig,
    create_default_config,
    load_server_config,
    read_raw_config,
    save_server_config,
    validate_server_config,
)
from .state import InstanceRecord, ServerRepository
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


class InstanceConflictError(RuntimeError):
    """Raised when an instance name is taken by a running or foreign server."""


@dataclass(frozen=True)
class StartOptions:
    """Command-line choices for one ``start``."""

    project_dir: Path
    environment: str | None = None
    name: str | None = None
    port: int | None = None
    lucee_version: str | None = None
    agent_overrides: AgentOverrides = field(default_factory=AgentOverrides)
    foreground: bool = False
    force: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class StartPlan:
    """The settled identity, ports and agents of a start."""

    config: ServerConfig
    ports: PortResolution
    instance_dir: Path
    force_replace: bool
    restart: bool
    active_agents: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.config.name,
            "runtime": self.config.runtime_type,
            "lucee_version": self.config.lucee_version,
            "instance_dir": str(self.instance_dir),
            "ports": self.ports.ports(),
            "conflicts": [conflict.to_dict() for conflict in self.ports.conflicts],
            "force_replace": self.force_replace,
            "restart": self.restart,
            "agents": list(self.active_agents),
        }


@dataclass(frozen=True)
class StartOutcome:
    """Result of :meth:`ServerManager.start`."""

    plan: StartPlan
    preparation: Preparation
    instance: ServerInstance | None
    lock_wait_ms: int = 0


@dataclass(frozen=True)
class StopOutcome:
    """Result of :meth:`ServerManager.stop`."""

    name: str
    found: bool
    was_running: bool
    stopped: bool
    lock_wait_ms: int = 0


@dataclass(frozen=True)
class PruneOutcome:
    """Instances removed (and kept) by :meth:`ServerManager.prune`."""

    removed: tuple[str, ...]
    skipped: tuple[str, ...]


@dataclass(slots=True)
class ServerManager:
    """High level operations over the servers directory."""

    app_config: AppConfig
    repository: ServerRepository
    processes: ProcessManager
    locks: LockManager
    context: ProviderContext
    port_probe: Callable[[int], bool] = is_port_available
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    @classmethod
    def from_app_config(
        cls,
        app_config: AppConfig,
        *,
        env: Mapping[str, str] | None = None,
        compat: ServletCompatibility | None = None,
    ) -> ServerManager:
        """Wire a manager from resolved tool settings."""
        resolved_env = dict(os.environ if env is None else env)
        templates = TemplateEngine.with_overrides(app_config.templates_dir)
        context = ProviderContext(
            builder=InstanceDirectoryBuilder(templates=templates, patches_dir=app_config.patches_dir),
            artifacts=ArtifactCache(
                express_root=app_config.express_dir,
                jars_root=app_config.jars_dir,
                express_url=app_config.downloads.express_url,
                jar_url=app_config.downloads.jar_url,
                timeout=app_config.downloads.timeout,
            ),
            env=resolved_env,
            java_bin=app_config.java_bin,
            docker_bin=app_config.docker_bin,
            detect_timeout=app_config.lifecycle.version_detect_timeout,
            compat=compat or load_servlet_compatibility(app_config.compat_file),
        )
        lifecycle = app_config.lifecycle
        return cls(
            app_config=app_config,
            repository=ServerRepository(app_config.servers_dir),
            processes=ProcessManager(
                startup_timeout=lifecycle.startup_timeout,
                poll_interval=lifecycle.poll_interval,
                stop_timeout=lifecycle.stop_timeout,
            ),
            locks=LockManager(app_config.runtime_dir, app_config.lock_timeout),
            context=context,
            env=resolved_env,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def ensure_project_config(
        self,
        project_dir: Path,
        *,
        name: str | None = None,
        lucee_version: str | None = None,
        dry_run: bool = False,
    ) -> tuple[Path, bool]:
        """Write a default ``lucee.json`` when *project_dir* has none.

        Returns the path and whether it was (or, for a dry run, would be)
        created.
        """
        path = project_dir / CONFIG_FILE_NAME
        if path.exists():
            return path, False
        config = create_default_config(
            project_dir,
            name=name,
            lucee_version=lucee_version or self.app_config.default_lucee_version,
        )
        if not dry_run:
            project_dir.mkdir(parents=True, exist_ok=True)
            save_server_config(config, path)
            LOGGER.info("Created %s", path)
        return path, True

    def load_config(self, options: StartOptions) -> ServerConfig:
        """Load ``lucee.json`` for *options* and apply command-line overrides."""
        config = load_server_config(
            options.project_dir,
            environment=options.environment,
            env=self.env,
        )
        if options.name:
            config = replace(config, name=options.name.strip())
        if options.port is not None:
            config = replace(config, port=options.port)
        if options.lucee_version:
            config = replace(config, lucee=LuceeConfig(options.lucee_version, config.lucee.variant))
        validate_server_config(config)
        return config

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def resolve_identity(
        self,
        config: ServerConfig,
        project_dir: Path,
        *,
        force: bool = False,
    ) -> tuple[bool, bool]:
        """Decide how to treat an existing instance with the same name.

        Returns ``(force_replace, restart)``. A running instance is always a
        conflict. A stopped instance of the same project is restarted in
        place; one that belongs to another project needs ``force``. A project
        runs at most one server, whatever its name.
        """
        name = config.name
        for other in self.repository.find_by_project(project_dir):
            if other.running and other.name != name:
                raise InstanceConflictError(
                    f"Server already running for project: {other.name} "
                    f"(PID {other.pid}, port {other.port}). "
                    f"Stop it first with: luceectl stop --name {other.name}"
                )
        record = self.repository.record(name)
        if record is None:
            return False, False
        if record.running:
            port = f" on port {record.port}" if record.port else ""
            raise InstanceConflictError(
                f"Server '{name}' is already running{port}. "
                f"Stop it first with: luceectl stop --name {name}"
            )
        if self.repository.belongs_to(name, project_dir):
            return force, True
        if not force:
            owner = record.project_dir or "an unknown project"
            suggestion = self.repository.unique_name(name)
            raise InstanceConflictError(
                f"Server name '{name}' is already used by {owner}. "
                f"Use --name {suggestion} for this project, or --force to replace it."
            )
        return True, False

    def start(
        self,
        options: StartOptions,
        *,
        on_ports_resolved: Callable[[PortResolution], None] | None = None,
        on_prepared: Callable[[StartPlan, Preparation], None] | None = None,
        on_launched: Callable[[StartPlan], None] | None = None,
    ) -> StartOutcome:
        """Start the server for ``options.project_dir``.

        *on_ports_resolved* runs as soon as ports are settled, before the
        provider touches the installation. *on_prepared* runs once the instance directory is built and before
        anything is spawned; *on_launched* runs after the PID is recorded,
        with the locks already released.
        """
        project_dir = options.project_dir.expanduser().resolve()
        config = self.load_config(replace(options, project_dir=project_dir))
        self.repository.ensure_root()

        with ExitStack() as stack:
            bundle = stack.enter_context(self.locks.mutate_instances([config.name]))
            force_replace, restart = self.resolve_identity(config, project_dir, force=options.force)
            resolver = PortResolver(
                self.repository,
                probe=self.port_probe,
                scan_limit=self.app_config.ports.scan_limit,
            )
            resolution = resolver.resolve(config, exclude=config.name, dry_run=options.dry_run)
            if on_ports_resolved is not None:
                on_ports_resolved(resolution)
            config = resolution.config
            validate_server_config(config)

            plan = StartPlan(
                config=config,
                ports=resolution,
                instance_dir=self.repository.instance_dir(config.name),
                force_replace=force_replace,
                restart=restart,
                active_agents=tuple(resolve_active_agents(config, options.agent_overrides)),
            )
            request = StartRequest(
                config=config,
                project_dir=project_dir,
                instance_dir=plan.instance_dir,
                environment=options.environment,
                agent_overrides=options.agent_overrides,
                active_agents=plan.active_agents,
                foreground=options.foreground,
                force_replace=force_replace,
                dry_run=options.dry_run,
            )
            provider = provider_for(config.runtime, self.context)

            def _prepared(preparation: Preparation) -> None:
                if on_prepared is not None:
                    on_prepared(plan, preparation)

            def _launched() -> None:
                stack.close()
                if on_launched is not None:
                    on_launched(plan)

            preparation, instance = start_server(
                provider,
                request,
                repository=self.repository,
                processes=self.processes,
                on_prepared=_prepared,
                on_launched=_launched,
            )
        return StartOutcome(
            plan=plan,
            preparation=preparation,
            instance=instance,
            lock_wait_ms=bundle.wait_ms,
        )

    # ------------------------------------------------------------------
    # Stop and queries
    # ------------------------------------------------------------------
    def resolve_name(self, project_dir: Path, name: str | None = None) -> str:
        """Return *name* or the instance that belongs to *project_dir*.

        Prefers a running instance of the project, then any instance of the
        project, then the name from ``lucee.json`` (or the directory name).
        """
        if name:
            return name.strip()
        project_dir = project_dir.expanduser().resolve()
        records = self.repository.find_by_project(project_dir)
        for record in records:
            if record.running:
                return record.name
        if records:
            return records[0].name
        raw = read_raw_config(project_dir / CONFIG_FILE_NAME)
        configured = raw.get("name")
        if isinstance(configured, str) and configured.strip():
            return configured.strip()
        return project_dir.name

    def stop(self, name: str) -> StopOutcome:
        """Stop *name*; an unknown or stopped instance is not an error."""
        with self.locks.mutate_instances([name]) as bundle:
            record = self.repository.record(name)
            if record is None:
                return StopOutcome(name, found=False, was_running=False, stopped=False)
            if not record.running:
                self.repository.remove_pid(name)
                return StopOutcome(
                    name, found=True, was_running=False, stopped=False, lock_wait_ms=bundle.wait_ms
                )
            provider = provider_for(record.runtime_type, self.context)
            stopped = provider.stop(record, repository=self.repository, processes=self.processes)
            LOGGER.info("Stopped %s", name)
            return StopOutcome(
                name, found=True, was_running=True, stopped=stopped, lock_wait_ms=bundle.wait_ms
            )

    def status(self, name: str) -> InstanceRecord | None:
        """Return the record for *name*."""
        return self.repository.record(name)

    def list_instances(self) -> list[InstanceRecord]:
        """Return every known instance."""
        return self.repository.list_records()

    def prune(self, *, name: str | None = None, all_stopped: bool = False) -> PruneOutcome:
        """Delete stopped instance directories.

        With *name*, pruning a running instance is an error. With
        *all_stopped*, running instances are skipped.
        """
        if name is None and not all_stopped:
            raise InstanceConflictError("Specify an instance name or prune all stopped instances.")
        targets = [name] if name is not None else self.repository.names()
        removed: list[str] = []
        skipped: list[str] = []
        with self.locks.mutate_instances(targets):
            for target in targets:
                record = self.repository.record(target)
                if record is None:
                    continue
                if record.running:
                    if name is not None:
                        raise InstanceConflictError(
                            f"Server '{target}' is running; stop it before pruning."
                        )
                    skipped.append(target)
                    continue
                if self.repository.delete(target):
                    removed.append(target)
        return PruneOutcome(removed=tuple(removed), skipped=tuple(skipped))


__all__ = [
    "InstanceConflictError",
    "PruneOutcome",
    "ServerManager",
    "StartOptions",
    "StartOutcome",
    "StartPlan",
    "StopOutcome",
]
