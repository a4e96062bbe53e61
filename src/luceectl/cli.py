"""Typer-powered command line interface for ``luceectl``.

Every command resolves the tool settings once (``_ensure_runtime``), runs
inside a structured operation scope and maps domain errors to the exit codes
in :mod:`luceectl.exit_codes`.
"""
from __future__ import annotations

import json
import textwrap
import webbrowser
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .artifacts import ArtifactError
from .compat import CompatibilityError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .extensions import ExtensionError
from .jvm import AgentOverrides
from .keystore import KeystoreError
from .lifecycle import LifecycleError
from .locking import LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .manager import InstanceConflictError, ServerManager, StartOptions, StartPlan
from .monitor import snapshot
from .ports import PortConflictError, PortResolution
from .providers import InstallationError, Preparation, ProviderError
from .server_config import ServerConfig, ServerConfigError
from .server_logs import LogType, follow, log_file, tail_lines
from .state import InstanceRecord, StateRegistryError
from .xmlpatch import XmlPatchError

console = Console()
err_console = Console(stderr=True)

_EXIT_CODES: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
    (
        (
            ServerConfigError,
            ConfigError,
            CompatibilityError,
            PortConflictError,
            InstanceConflictError,
            StateRegistryError,
            ExtensionError,
            KeystoreError,
        ),
        ExitCode.VALIDATION,
    ),
    ((InstallationError, ArtifactError), ExitCode.ENVIRONMENT),
    ((ProviderError, LifecycleError, XmlPatchError, LockTimeoutError), ExitCode.PROVIDER),
)
HANDLED_ERRORS: tuple[type[BaseException], ...] = tuple(
    error for errors, _ in _EXIT_CODES for error in errors
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to luceectl's YAML config file.",
)
PROJECT_DIR_ARGUMENT = typer.Argument(
    Path("."),
    file_okay=False,
    help="Project directory containing lucee.json (defaults to the current directory).",
)
NAME_OPTION = typer.Option(
    None,
    "--name",
    "-n",
    help="Server name (defaults to the server of the project directory).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Local development server manager for the Lucee CFML engine.

        Starts Lucee on the bundled Lucee Express, an existing Tomcat or Jetty
        installation, or a Docker image, with one private instance directory
        per server under the luceectl home.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect luceectl's own settings.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    manager: ServerManager
    logger: StructuredLogger


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    home: Path | None = None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, home=home, overrides=overrides)
        manager = ServerManager.from_app_config(config)
    except (ConfigError, CompatibilityError) as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        manager=manager,
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the luceectl version and exit.",
    ),
    home: Path | None = typer.Option(
        None,
        "--home",
        file_okay=False,
        help="Override the luceectl home directory (default: $LUCEECTL_HOME or ~/.luceectl).",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"luceectl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, home, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code for a domain error."""
    for errors, code in _EXIT_CODES:
        if isinstance(exc, errors):
            return code
    return ExitCode.PROVIDER


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _domain_error(op: OperationScope, exc: BaseException) -> NoReturn:
    _command_error(op, str(exc), rc=int(exit_code_for(exc)))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def server_url(config: ServerConfig) -> str:
    """Return the URL a browser should open for *config*."""
    if config.open_browser_url:
        return config.open_browser_url
    host = config.effective_host
    if config.https_redirect_enabled:
        return f"https://{host}:{config.effective_https_port}/"
    return f"http://{host}:{config.port}/"


def _print_port_details(config: ServerConfig, *, foreground: bool) -> None:
    host = config.effective_host
    console.print(f"  HTTP:      http://{host}:{config.port}/")
    console.print(f"  Shutdown:  {config.effective_shutdown_port}")
    if config.jmx_port is not None:
        console.print(f"  JMX:       {config.jmx_port}")
    if config.https_enabled:
        redirect = "on" if config.https_redirect_enabled else "off"
        console.print(
            f"  HTTPS:     https://{host}:{config.effective_https_port}/ (redirect {redirect})"
        )
    if foreground:
        console.print("[bold]Press Ctrl+C to stop the server[/bold]")


def _record_status(record: InstanceRecord) -> str:
    return "[green]running[/green]" if record.running else "[dim]stopped[/dim]"


def _open_browser(url: str) -> bool:
    try:
        return webbrowser.open(url)
    except webbrowser.Error:
        return False


# ----------------------------------------------------------------------
# Server commands
# ----------------------------------------------------------------------
@app.command()
def start(
    ctx: typer.Context,
    project_dir: Path = PROJECT_DIR_ARGUMENT,
    lucee_version: str | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Lucee version to run (overrides lucee.json).",
    ),
    name: str | None = typer.Option(None, "--name", "-n", help="Server name override."),
    port: int | None = typer.Option(None, "--port", "-p", min=1, max=65535, help="HTTP port."),
    environment: str | None = typer.Option(
        None,
        "--env",
        "-e",
        help="Apply environments.<name> from lucee.json.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Replace an existing instance directory with the same name.",
    ),
    foreground: bool = typer.Option(
        False,
        "--foreground",
        "-f",
        help="Run attached to the terminal until Ctrl+C.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show what would be written and launched without doing it.",
    ),
    agents: str | None = typer.Option(
        None,
        "--agents",
        help="Comma separated agent ids to activate instead of the configured ones.",
    ),
    enable_agent: list[str] = typer.Option(
        [],
        "--enable-agent",
        help="Activate an agent in addition to the configured ones (repeatable).",
    ),
    disable_agent: list[str] = typer.Option(
        [],
        "--disable-agent",
        help="Deactivate a configured agent (repeatable).",
    ),
    no_agents: bool = typer.Option(False, "--no-agents", help="Disable every agent."),
    no_browser: bool = typer.Option(
        False,
        "--no-browser",
        help="Do not open a browser once the server is up.",
    ),
) -> None:
    """Start the Lucee server for a project."""
    runtime = _get_runtime(ctx)
    project = project_dir.expanduser().resolve()
    options = StartOptions(
        project_dir=project,
        environment=environment,
        name=name,
        port=port,
        lucee_version=lucee_version,
        agent_overrides=AgentOverrides.from_cli(
            include=agents,
            enable=enable_agent,
            disable=disable_agent,
            disable_all=no_agents,
        ),
        foreground=foreground,
        force=force,
        dry_run=dry_run,
    )

    with runtime.logger.operation(
        "start",
        args={
            "version": lucee_version,
            "name": name,
            "port": port,
            "env": environment,
            "force": force,
            "foreground": foreground,
            "dry_run": dry_run,
        },
        target={"kind": "server", "project": str(project)},
    ) as op:

        def _on_ports_resolved(resolution: PortResolution) -> None:
            for conflict in resolution.conflicts:
                console.print(f"[yellow]{conflict.describe()}[/yellow]")

        def _on_prepared(plan: StartPlan, preparation: Preparation) -> None:
            for warning in preparation.all_warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
            op.add_step(
                "instance.prepare",
                status="skipped" if dry_run else "success",
                detail=str(plan.instance_dir),
            )
            if dry_run:
                console.print(f"[bold]Instance directory:[/bold] {plan.instance_dir}")
                for action in preparation.all_actions:
                    console.print(f"  - {action}")
                if preparation.launch is not None:
                    console.print(f"[bold]Command:[/bold] {preparation.launch.describe()}")

        def _on_launched(plan: StartPlan) -> None:
            op.add_step("server.launch", detail=plan.config.name)
            if foreground:
                console.print(
                    f"[green]Server '{plan.config.name}' running in the foreground.[/green]"
                )
                _print_port_details(plan.config, foreground=True)

        try:
            config_path, created = runtime.manager.ensure_project_config(
                project,
                name=name,
                lucee_version=lucee_version,
                dry_run=dry_run,
            )
            if created:
                verb = "Would create" if dry_run else "Created"
                console.print(f"[green]{verb} {config_path}[/green]")
                op.add_step("config.create", detail=str(config_path))
            outcome = runtime.manager.start(
                options,
                on_ports_resolved=_on_ports_resolved,
                on_prepared=_on_prepared,
                on_launched=_on_launched,
            )
        except HANDLED_ERRORS as exc:
            _domain_error(op, exc)

        op.set_lock_wait_ms(outcome.lock_wait_ms)
        plan = outcome.plan
        context = plan.to_dict()
        warnings = list(outcome.preparation.all_warnings) + [
            conflict.describe() for conflict in plan.ports.conflicts
        ]
        if dry_run:
            _dry_run_complete(op, plan.ports.summary(), context=context)
            return
        if outcome.instance is None:
            console.print(f"Server '{plan.config.name}' stopped.")
            op.success("Foreground server exited.", changed=1, warnings=warnings, context=context)
            return

        instance = outcome.instance
        pid_text = "container" if instance.is_container else f"pid {instance.pid}"
        console.print(
            f"[green]Server '{instance.name}' started ({pid_text}, "
            f"runtime {instance.runtime_type}).[/green]"
        )
        _print_port_details(plan.config, foreground=False)
        if plan.config.open_browser and not no_browser:
            url = server_url(plan.config)
            if _open_browser(url):
                op.add_step("browser.open", detail=url)
        context.update(instance.to_dict())
        if warnings:
            op.warning("Server started with warnings.", warnings=warnings, changed=1, context=context)
        else:
            op.success("Server started.", changed=1, context=context)


@app.command()
def stop(
    ctx: typer.Context,
    project_dir: Path = PROJECT_DIR_ARGUMENT,
    name: str | None = NAME_OPTION,
) -> None:
    """Stop a running server; stopping an unknown server is not an error."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name},
        target={"kind": "server", "project": str(project_dir)},
    ) as op:
        try:
            resolved = runtime.manager.resolve_name(project_dir, name)
            outcome = runtime.manager.stop(resolved)
        except HANDLED_ERRORS as exc:
            _domain_error(op, exc)
        op.set_lock_wait_ms(outcome.lock_wait_ms)
        if not outcome.was_running:
            console.print(f"Server '{resolved}' is not running.")
            op.success("Server not running.", changed=0, context={"name": resolved})
            return
        console.print(f"[green]Server '{resolved}' stopped.[/green]")
        op.success("Server stopped.", changed=1, context={"name": resolved})


@app.command()
def status(
    ctx: typer.Context,
    project_dir: Path = PROJECT_DIR_ARGUMENT,
    name: str | None = NAME_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show whether a server is running."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"name": name, "json": json_output},
        target={"kind": "server", "project": str(project_dir)},
    ) as op:
        try:
            resolved = runtime.manager.resolve_name(project_dir, name)
            record = runtime.manager.status(resolved)
        except HANDLED_ERRORS as exc:
            _domain_error(op, exc)
        if record is None:
            _command_error(op, f"No server named '{resolved}'.", rc=int(ExitCode.VALIDATION))

        if json_output:
            console.print_json(data=record.to_dict())
            op.success("Reported server status as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Name", record.name)
        table.add_row("Status", _record_status(record))
        table.add_row("PID", "container" if record.pid == -1 else str(record.pid or ""))
        table.add_row("Port", str(record.port or ""))
        table.add_row("Runtime", record.runtime_type or "")
        table.add_row("Environment", record.environment or "")
        table.add_row("Project", str(record.project_dir or ""))
        table.add_row("Instance dir", str(record.instance_dir))
        console.print(table)
        op.success("Reported server status.", changed=0)


@app.command("list")
def list_servers(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List every known server instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "servers"},
    ) as op:
        records = runtime.manager.list_instances()
        if json_output:
            console.print_json(data={"servers": [record.to_dict() for record in records]})
            op.success("Reported servers as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Status")
        table.add_column("Port")
        table.add_column("Runtime")
        table.add_column("Project")
        if not records:
            table.add_row("(none)", "", "", "", "")
        for record in records:
            table.add_row(
                record.name,
                _record_status(record),
                str(record.port or ""),
                record.runtime_type or "",
                str(record.project_dir or ""),
            )
        console.print(table)
        op.success("Reported servers.", changed=0)


@app.command()
def log(
    ctx: typer.Context,
    project_dir: Path = PROJECT_DIR_ARGUMENT,
    name: str | None = NAME_OPTION,
    log_type: LogType = typer.Option(
        LogType.TOMCAT,
        "--type",
        "-t",
        case_sensitive=False,
        help="Log family to show.",
    ),
    log_name: str | None = typer.Option(
        None,
        "--log",
        help="Specific log file in the family's folder (e.g. 'exception').",
    ),
    lines: int = typer.Option(50, "--lines", min=0, help="Number of trailing lines to show."),
    follow_log: bool = typer.Option(False, "--follow", "-F", help="Keep printing new lines."),
) -> None:
    """Show a server's log output."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "log",
        args={"name": name, "type": log_type.value, "lines": lines, "follow": follow_log},
        target={"kind": "server", "project": str(project_dir)},
    ) as op:
        try:
            resolved = runtime.manager.resolve_name(project_dir, name)
            record = runtime.manager.status(resolved)
        except HANDLED_ERRORS as exc:
            _domain_error(op, exc)
        if record is None:
            _command_error(op, f"No server named '{resolved}'.", rc=int(ExitCode.VALIDATION))
        path = log_file(record.instance_dir, log_type, log_name=log_name)
        if not path.is_file():
            _command_error(op, f"Log file not found: {path}", rc=int(ExitCode.VALIDATION))

        console.print(f"[dim]==> {path} <==[/dim]")
        for line in tail_lines(path, lines):
            console.print(line, markup=False, highlight=False)
        if follow_log:
            try:
                for line in follow(path):
                    console.print(line, markup=False, highlight=False)
            except KeyboardInterrupt:
                pass
        op.success("Displayed log.", changed=0, context={"path": str(path)})


@app.command()
def monitor(
    ctx: typer.Context,
    project_dir: Path = PROJECT_DIR_ARGUMENT,
    name: str | None = NAME_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show process metrics and listener health for a server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "monitor",
        args={"name": name, "json": json_output},
        target={"kind": "server", "project": str(project_dir)},
    ) as op:
        try:
            resolved = runtime.manager.resolve_name(project_dir, name)
            record = runtime.manager.status(resolved)
        except HANDLED_ERRORS as exc:
            _domain_error(op, exc)
        if record is None:
            _command_error(op, f"No server named '{resolved}'.", rc=int(ExitCode.VALIDATION))
        result = snapshot(record, jmx_port=runtime.manager.repository.jmx_port(resolved))

        if json_output:
            console.print_json(data=result.to_dict())
            op.success("Reported server metrics as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Metric", style="bold")
        table.add_column("Value")
        table.add_row("Status", _record_status(record))
        table.add_row("HTTP", "[green]ok[/green]" if result.http_ok else "[red]down[/red]")
        if result.jmx_port is not None:
            reachable = "reachable" if result.jmx_reachable else "unreachable"
            table.add_row("JMX", f"{result.jmx_port} ({reachable})")
        if result.process is not None:
            metrics = result.process
            table.add_row("PID", str(metrics.pid))
            table.add_row("CPU", f"{metrics.cpu_percent:.1f}%")
            table.add_row(
                "Memory",
                f"{metrics.memory_rss / (1024 * 1024):.0f} MiB ({metrics.memory_percent:.1f}%)",
            )
            table.add_row("Threads", str(metrics.threads))
            table.add_row("Uptime", f"{metrics.uptime_seconds:.0f}s")
        console.print(table)
        op.success("Reported server metrics.", changed=0)


@app.command()
def prune(
    ctx: typer.Context,
    name: str | None = NAME_OPTION,
    all_stopped: bool = typer.Option(
        False,
        "--all",
        help="Remove every stopped server instance.",
    ),
) -> None:
    """Delete the instance directories of stopped servers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "prune",
        args={"name": name, "all": all_stopped},
        target={"kind": "servers"},
    ) as op:
        if (name is None) == (not all_stopped):
            _command_error(op, "Specify exactly one of --name or --all.")
        try:
            outcome = runtime.manager.prune(name=name, all_stopped=all_stopped)
        except HANDLED_ERRORS as exc:
            _domain_error(op, exc)
        for removed in outcome.removed:
            console.print(f"[green]Removed {removed}[/green]")
        for skipped in outcome.skipped:
            console.print(f"[yellow]Skipped running server {skipped}[/yellow]")
        if not outcome.removed:
            console.print("Nothing to prune.")
        op.success(
            "Pruned servers.",
            changed=len(outcome.removed),
            context={"removed": list(outcome.removed), "skipped": list(outcome.skipped)},
        )


# ----------------------------------------------------------------------
# Config commands
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["HANDLED_ERRORS", "app", "exit_code_for", "main", "server_url"]
