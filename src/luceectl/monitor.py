"""Point-in-time health snapshot of a running instance."""
from __future__ import annotations

import socket
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from .lifecycle import probe_http
from .state import InstanceRecord


@dataclass(frozen=True)
class ProcessMetrics:
    """Resource usage of the server JVM as reported by psutil."""

    pid: int
    status: str
    cpu_percent: float
    memory_rss: int
    memory_percent: float
    threads: int
    uptime_seconds: float

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "pid": self.pid,
            "status": self.status,
            "cpu_percent": self.cpu_percent,
            "memory_rss": self.memory_rss,
            "memory_percent": round(self.memory_percent, 2),
            "threads": self.threads,
            "uptime_seconds": round(self.uptime_seconds, 1),
        }


@dataclass(frozen=True)
class MonitorSnapshot:
    """Everything ``monitor`` reports for one instance."""

    name: str
    running: bool
    port: int | None
    http_ok: bool
    jmx_port: int | None
    jmx_reachable: bool | None
    process: ProcessMetrics | None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "running": self.running,
            "port": self.port,
            "http_ok": self.http_ok,
            "jmx_port": self.jmx_port,
            "jmx_reachable": self.jmx_reachable,
            "process": self.process.to_dict() if self.process else None,
        }


def process_metrics(pid: int, *, interval: float = 0.2) -> ProcessMetrics | None:
    """Return metrics for *pid* or ``None`` when it is gone or not accessible."""
    if pid <= 0:
        return None
    try:
        process = psutil.Process(pid)
        with process.oneshot():
            memory = process.memory_info()
            status = process.status()
            threads = process.num_threads()
            created = process.create_time()
            memory_percent = process.memory_percent()
        cpu = process.cpu_percent(interval=interval)
    except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
        return None
    return ProcessMetrics(
        pid=pid,
        status=status,
        cpu_percent=cpu,
        memory_rss=memory.rss,
        memory_percent=memory_percent,
        threads=threads,
        uptime_seconds=max(0.0, time.time() - created),
    )


def port_reachable(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    """Return whether something accepts TCP connections on *port*."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def snapshot(
    record: InstanceRecord,
    *,
    jmx_port: int | None = None,
    http_probe: Callable[[str, int, float], bool] = probe_http,
    tcp_probe: Callable[[int], bool] = port_reachable,
    metrics: Callable[[int], ProcessMetrics | None] = process_metrics,
) -> MonitorSnapshot:
    """Collect a :class:`MonitorSnapshot` for *record*."""
    http_ok = bool(record.running and record.port and http_probe("127.0.0.1", record.port, 2.0))
    jmx_reachable = tcp_probe(jmx_port) if record.running and jmx_port else None
    process = metrics(record.pid) if record.running and record.pid and record.pid > 0 else None
    return MonitorSnapshot(
        name=record.name,
        running=record.running,
        port=record.port,
        http_ok=http_ok,
        jmx_port=jmx_port,
        jmx_reachable=jmx_reachable,
        process=process,
    )


__all__ = ["MonitorSnapshot", "ProcessMetrics", "port_reachable", "process_metrics", "snapshot"]
