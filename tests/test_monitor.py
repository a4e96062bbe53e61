"""Tests for the monitor snapshot."""
from __future__ import annotations

import os
from pathlib import Path

from luceectl.monitor import ProcessMetrics, process_metrics, snapshot
from luceectl.state import CONTAINER_PID, InstanceRecord


def _record(tmp_path: Path, *, pid: int | None, running: bool) -> InstanceRecord:
    return InstanceRecord(
        name="myapp",
        instance_dir=tmp_path,
        pid=pid,
        port=8181 if pid is not None else None,
        project_dir=None,
        environment=None,
        runtime_type="lucee-express",
        container_name=None,
        running=running,
    )


def _metrics(pid: int) -> ProcessMetrics:
    return ProcessMetrics(
        pid=pid,
        status="running",
        cpu_percent=1.5,
        memory_rss=1024,
        memory_percent=0.123,
        threads=42,
        uptime_seconds=12.34,
    )


def test_snapshot_of_running_server(tmp_path: Path) -> None:
    probes: list[tuple[str, int]] = []

    def http_probe(host: str, port: int, timeout: float) -> bool:
        probes.append((host, port))
        return True

    result = snapshot(
        _record(tmp_path, pid=4242, running=True),
        jmx_port=8999,
        http_probe=http_probe,
        tcp_probe=lambda port: port == 8999,
        metrics=_metrics,
    )

    assert probes == [("127.0.0.1", 8181)]
    payload = result.to_dict()
    assert payload["http_ok"] is True
    assert payload["jmx_reachable"] is True
    assert payload["process"] == {
        "pid": 4242,
        "status": "running",
        "cpu_percent": 1.5,
        "memory_rss": 1024,
        "memory_percent": 0.12,
        "threads": 42,
        "uptime_seconds": 12.3,
    }


def test_snapshot_of_stopped_server_skips_probes(tmp_path: Path) -> None:
    def fail(*args: object) -> bool:
        raise AssertionError("probe should not run")

    result = snapshot(
        _record(tmp_path, pid=None, running=False),
        jmx_port=8999,
        http_probe=fail,
        tcp_probe=fail,
        metrics=fail,  # type: ignore[arg-type]
    )

    assert result.running is False
    assert result.http_ok is False
    assert result.jmx_reachable is None
    assert result.process is None


def test_container_has_no_process_metrics(tmp_path: Path) -> None:
    result = snapshot(
        _record(tmp_path, pid=CONTAINER_PID, running=True),
        http_probe=lambda host, port, timeout: False,
        metrics=_metrics,
    )

    assert result.process is None
    assert result.jmx_reachable is None


def test_process_metrics_for_current_process() -> None:
    metrics = process_metrics(os.getpid(), interval=0.0)

    assert metrics is not None
    assert metrics.pid == os.getpid()
    assert metrics.threads >= 1
    assert process_metrics(-5) is None
