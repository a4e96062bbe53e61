"""Catalina helpers shared by the Lucee Express and external Tomcat providers."""
from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from ..extensions import ExtensionPlan
from ..instance_dir import BuildResult
from ..jvm import join_opts
from ..lifecycle import LaunchPlan, run_command
from ..server_config import ServerConfig
from .base import InstallationError, require_directory, server_environment

TOMCAT_VERSION_PATTERN = re.compile(r"Server version:\s*Apache Tomcat/(\d+)\.\d+")
RELEASE_NOTES_PATTERN = re.compile(r"Apache Tomcat Version (\d+)\.\d+")

CommandRunner = Callable[..., object]


def catalina_script(home: Path, *, windows: bool | None = None) -> Path:
    """Return ``bin/catalina.sh`` (``catalina.bat`` on Windows) below *home*."""
    if windows is None:
        windows = os.name == "nt"
    return home / "bin" / ("catalina.bat" if windows else "catalina.sh")


def validate_catalina_home(home: Path, label: str = "CATALINA_HOME") -> Path:
    """Check that *home* looks like a Tomcat installation and return its script."""
    require_directory(home, label)
    require_directory(home / "bin", f"{label}/bin")
    require_directory(home / "lib", f"{label}/lib")
    script = catalina_script(home)
    if not script.is_file():
        raise InstallationError(f"Catalina script not found: {script}")
    if os.name != "nt" and not os.access(script, os.X_OK):
        raise InstallationError(f"Catalina script is not executable: {script}")
    return script


def catalina_environment(
    config: ServerConfig,
    *,
    catalina_home: Path,
    catalina_base: Path,
    catalina_opts: Sequence[str],
    extensions: ExtensionPlan | None,
    base_env: Mapping[str, str],
) -> dict[str, str]:
    """Return the environment ``catalina.sh`` runs with."""
    env = dict(base_env)
    env.update(
        {
            "CATALINA_HOME": str(catalina_home),
            "CATALINA_BASE": str(catalina_base),
            "CATALINA_OPTS": join_opts(catalina_opts),
            "CATALINA_PID": str(catalina_base / "logs" / "catalina.pid"),
            "CATALINA_OUT": str(catalina_base / "logs" / "catalina.out"),
            "CATALINA_TMPDIR": str(catalina_base / "temp"),
        }
    )
    return server_environment(config, extensions, env)


def catalina_launch_plan(
    config: ServerConfig,
    *,
    catalina_home: Path,
    catalina_base: Path,
    build: BuildResult,
    base_env: Mapping[str, str],
) -> LaunchPlan:
    """Return the ``catalina.sh run`` plan for an instance directory."""
    env = catalina_environment(
        config,
        catalina_home=catalina_home,
        catalina_base=catalina_base,
        catalina_opts=build.catalina_opts,
        extensions=build.extensions,
        base_env=base_env,
    )
    return LaunchPlan(
        command=(str(catalina_script(catalina_home)), "run"),
        env=env,
        cwd=catalina_base,
        stdout_path=catalina_base / "logs" / "server.out",
        stderr_path=catalina_base / "logs" / "server.err",
    )


def detect_tomcat_major(
    home: Path,
    *,
    env: Mapping[str, str],
    timeout: float,
    runner: CommandRunner = run_command,
) -> int | None:
    """Return the Tomcat major version installed at *home*.

    Runs ``catalina.sh version`` first and falls back to ``RELEASE-NOTES``.
    Failures and unparseable output yield ``None``.
    """
    script = catalina_script(home)
    if script.is_file():
        child_env = dict(env)
        child_env["CATALINA_HOME"] = str(home)
        result = runner([str(script), "version"], env=child_env, timeout=timeout)
        output = getattr(result, "stdout", "") or ""
        match = TOMCAT_VERSION_PATTERN.search(output)
        if match:
            return int(match.group(1))
    notes = home / "RELEASE-NOTES"
    if notes.is_file():
        match = RELEASE_NOTES_PATTERN.search(notes.read_text(encoding="utf-8", errors="replace"))
        if match:
            return int(match.group(1))
    return None


__all__ = [
    "catalina_environment",
    "catalina_launch_plan",
    "catalina_script",
    "detect_tomcat_major",
    "validate_catalina_home",
]
