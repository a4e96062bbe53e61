"""Repository over the per-instance server directories.

Each instance lives in ``<home>/servers/<name>/`` and carries small marker
files next to the generated Catalina/Jetty configuration:

``server.pid``
    ``<pid>:<http port>`` of the running server (``-1`` for containers).
``.project-path``
    Absolute path of the project that owns the instance.
``.environment`` / ``.runtime-type``
    The environment overlay and runtime used for the last start.
``.container-name``
    Docker container name (Docker runtime only).
``.jetty-stop``
    ``<stop port>:<stop key>`` (Jetty runtime only).
``.jmx-port``
    JMX port passed on the command line (Jetty runtime with monitoring).

No separate port table is persisted; the ports claimed by running instances
are derived from these files on every call.
"""
from __future__ import annotations

import os
import re
import shutil
import tempfile
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..lifecycle import is_process_alive

PID_FILE = "server.pid"
PROJECT_MARKER = ".project-path"
ENVIRONMENT_MARKER = ".environment"
RUNTIME_MARKER = ".runtime-type"
CONTAINER_MARKER = ".container-name"
JETTY_STOP_MARKER = ".jetty-stop"
JMX_MARKER = ".jmx-port"
CONTAINER_PID = -1

_JMX_PORT_PATTERN = re.compile(r"jmxremote\.port=(\d+)")


class StateRegistryError(RuntimeError):
    """Raised when instance state cannot be read or written."""


@dataclass(frozen=True)
class InstanceRecord:
    """Snapshot of one instance directory."""

    name: str
    instance_dir: Path
    pid: int | None
    port: int | None
    project_dir: Path | None
    environment: str | None
    runtime_type: str | None
    container_name: str | None
    running: bool

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "status": "running" if self.running else "stopped",
            "pid": self.pid,
            "port": self.port,
            "instance_dir": str(self.instance_dir),
            "project_dir": str(self.project_dir) if self.project_dir else None,
            "environment": self.environment,
            "runtime": self.runtime_type,
            "container_name": self.container_name,
        }


@dataclass(frozen=True)
class ServerRepository:
    """Read and write instance state below *root* (the servers directory)."""

    root: Path
    liveness: Callable[[int], bool] = is_process_alive

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the servers directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths and markers
    # ------------------------------------------------------------------
    def instance_dir(self, name: str) -> Path:
        """Return the directory for the instance called *name*."""
        normalized = name.strip()
        if not normalized or "/" in normalized or normalized in {".", ".."}:
            raise StateRegistryError(f"Invalid instance name '{name}'.")
        return self.root / normalized

    def exists(self, name: str) -> bool:
        """Return whether an instance directory exists for *name*."""
        return self.instance_dir(name).is_dir()

    def names(self) -> list[str]:
        """Return the names of every instance directory, sorted."""
        if not self.root.is_dir():
            return []
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())

    def read_marker(self, name: str, marker: str) -> str | None:
        """Return the stripped contents of *marker*, or ``None`` if absent."""
        path = self.instance_dir(name) / marker
        try:
            value = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def write_marker(self, name: str, marker: str, value: str) -> None:
        """Atomically write *value* to *marker* inside the instance directory."""
        directory = self.instance_dir(name)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / marker
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_path, path)
            os.chmod(path, 0o644)
        finally:
            tmp_path.unlink(missing_ok=True)

    def remove_marker(self, name: str, marker: str) -> None:
        """Delete *marker* if present."""
        (self.instance_dir(name) / marker).unlink(missing_ok=True)

    # PID file -------------------------------------------------------
    def read_pid(self, name: str) -> tuple[int, int | None] | None:
        """Return ``(pid, port)`` from ``server.pid`` or ``None`` when missing/corrupt."""
        value = self.read_marker(name, PID_FILE)
        if value is None:
            return None
        pid_text, _, port_text = value.partition(":")
        try:
            pid = int(pid_text)
            port = int(port_text) if port_text else None
        except ValueError:
            return None
        return pid, port

    def write_pid(self, name: str, pid: int, port: int) -> None:
        """Record the server's PID and HTTP port."""
        self.write_marker(name, PID_FILE, f"{pid}:{port}")

    def remove_pid(self, name: str) -> None:
        """Delete ``server.pid`` (no error when already gone)."""
        if self.exists(name):
            self.remove_marker(name, PID_FILE)

    def record_start(
        self,
        name: str,
        *,
        project_dir: Path,
        environment: str | None,
        runtime_type: str,
    ) -> None:
        """Write the ownership markers for an instance about to start."""
        self.write_marker(name, PROJECT_MARKER, str(project_dir.resolve()))
        self.write_marker(name, RUNTIME_MARKER, runtime_type)
        if environment:
            self.write_marker(name, ENVIRONMENT_MARKER, environment)
        else:
            self.remove_marker(name, ENVIRONMENT_MARKER)
        self.remove_marker(name, JMX_MARKER)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def record(self, name: str) -> InstanceRecord | None:
        """Return an :class:`InstanceRecord` for *name*, or ``None`` if unknown."""
        if not self.exists(name):
            return None
        pid_info = self.read_pid(name)
        pid, port = pid_info if pid_info else (None, None)
        project = self.read_marker(name, PROJECT_MARKER)
        return InstanceRecord(
            name=name,
            instance_dir=self.instance_dir(name),
            pid=pid,
            port=port,
            project_dir=Path(project) if project else None,
            environment=self.read_marker(name, ENVIRONMENT_MARKER),
            runtime_type=self.read_marker(name, RUNTIME_MARKER),
            container_name=self.read_marker(name, CONTAINER_MARKER),
            running=self._is_running(pid),
        )

    def list_records(self) -> list[InstanceRecord]:
        """Return records for every instance directory."""
        records = []
        for name in self.names():
            record = self.record(name)
            if record is not None:
                records.append(record)
        return records

    def is_running(self, name: str) -> bool:
        """Return whether the instance has a live server process."""
        record = self.record(name)
        return bool(record and record.running)

    def belongs_to(self, name: str, project_dir: Path) -> bool:
        """Return whether the instance directory was created for *project_dir*."""
        owner = self.read_marker(name, PROJECT_MARKER)
        if owner is None:
            return False
        return Path(owner) == project_dir.resolve()

    def find_by_project(self, project_dir: Path) -> list[InstanceRecord]:
        """Return the instances owned by *project_dir*."""
        resolved = project_dir.resolve()
        return [record for record in self.list_records() if record.project_dir == resolved]

    def unique_name(self, base: str) -> str:
        """Return *base* or the first ``base-N`` without an instance directory."""
        candidate = base
        suffix = 1
        while self.exists(candidate):
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def jmx_port(self, name: str) -> int | None:
        """Return the instance's JMX port from ``.jmx-port`` or ``bin/setenv.sh``."""
        marker = _as_port(self.read_marker(name, JMX_MARKER))
        if marker is not None:
            return marker
        setenv = self.instance_dir(name) / "bin" / "setenv.sh"
        if not setenv.is_file():
            return None
        match = _JMX_PORT_PATTERN.search(setenv.read_text(encoding="utf-8", errors="replace"))
        return int(match.group(1)) if match else None

    def claimed_ports(self, *, exclude: str | None = None) -> dict[int, str]:
        """Return ``{port: instance}`` for every port held by a running instance."""
        claimed: dict[int, str] = {}
        for record in self.list_records():
            if record.name == exclude or not record.running:
                continue
            for port in self._ports_for(record):
                claimed.setdefault(port, record.name)
        return claimed

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def delete(self, name: str) -> bool:
        """Remove the instance directory; return ``False`` when it did not exist."""
        directory = self.instance_dir(name)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        return True

    # Internal helpers -------------------------------------------------
    def _is_running(self, pid: int | None) -> bool:
        if pid is None:
            return False
        if pid == CONTAINER_PID:
            return True
        return self.liveness(pid)

    def _ports_for(self, record: InstanceRecord) -> set[int]:
        ports: set[int] = set()
        if record.port is not None:
            ports.add(record.port)

        server_xml = record.instance_dir / "conf" / "server.xml"
        found_shutdown = False
        if server_xml.is_file():
            try:
                root = ET.parse(server_xml).getroot()
            except ET.ParseError:
                root = None
            if root is not None:
                shutdown = _as_port(root.get("port"))
                if shutdown is not None:
                    ports.add(shutdown)
                    found_shutdown = True
                for connector in root.iter():
                    if connector.tag.rsplit("}", 1)[-1] != "Connector":
                        continue
                    connector_port = _as_port(connector.get("port"))
                    if connector_port is not None:
                        ports.add(connector_port)
        if not found_shutdown and record.port is not None:
            ports.add(record.port + 1000)

        jmx = self.jmx_port(record.name)
        if jmx is not None:
            ports.add(jmx)

        stop_info = self.read_marker(record.name, JETTY_STOP_MARKER)
        if stop_info:
            stop_port = _as_port(stop_info.partition(":")[0])
            if stop_port is not None:
                ports.add(stop_port)
        return ports


def _as_port(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        port = int(value)
    except ValueError:
        return None
    return port if 0 < port < 65536 else None


__all__ = [
    "CONTAINER_MARKER",
    "CONTAINER_PID",
    "ENVIRONMENT_MARKER",
    "InstanceRecord",
    "JETTY_STOP_MARKER",
    "JMX_MARKER",
    "PID_FILE",
    "PROJECT_MARKER",
    "RUNTIME_MARKER",
    "ServerRepository",
    "StateRegistryError",
]
