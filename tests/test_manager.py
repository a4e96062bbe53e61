"""Tests for the server manager orchestration."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from luceectl.config import load_config
from luceectl.lifecycle import ProcessManager
from luceectl.manager import InstanceConflictError, ServerManager, StartOptions
from luceectl.ports import PortResolution
from luceectl.providers import InstallationError
from luceectl.server_config import ServerConfig
from luceectl.state import ServerRepository


def _manager(tmp_path: Path, *, alive: bool = False) -> ServerManager:
    app_config = load_config(home=tmp_path / "home", env={})
    manager = ServerManager.from_app_config(app_config, env={"PATH": "/usr/bin"})
    manager.repository = ServerRepository(app_config.servers_dir, liveness=lambda pid: alive)
    manager.port_probe = lambda port: True
    return manager


def _seed(manager: ServerManager, name: str, project: Path, *, pid: int | None = None) -> None:
    project.mkdir(parents=True, exist_ok=True)
    manager.repository.record_start(
        name, project_dir=project, environment=None, runtime_type="lucee-express"
    )
    if pid is not None:
        manager.repository.write_pid(name, pid, 8181)


def test_ensure_project_config_creates_default(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    project = tmp_path / "shop"
    project.mkdir()

    path, created = manager.ensure_project_config(project, dry_run=True)
    assert created is True
    assert not path.exists()

    path, created = manager.ensure_project_config(project, name="store")
    payload = json.loads(path.read_text())
    assert created is True
    assert payload["name"] == "store"
    assert payload["lucee"]["version"] == "6.2.2.91"
    assert manager.ensure_project_config(project) == (path, False)


def test_resolve_identity_rules(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path)
    config = ServerConfig(name="myapp")

    assert manager.resolve_identity(config, project_dir) == (False, False)

    _seed(manager, "myapp", project_dir)
    assert manager.resolve_identity(config, project_dir) == (False, True)
    assert manager.resolve_identity(config, project_dir, force=True) == (True, True)

    other = tmp_path / "other"
    other.mkdir()
    with pytest.raises(InstanceConflictError, match="--name myapp-1"):
        manager.resolve_identity(config, other)
    assert manager.resolve_identity(config, other, force=True) == (True, False)


def test_running_instance_is_a_conflict(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path, alive=True)
    _seed(manager, "myapp", project_dir, pid=4242)

    with pytest.raises(InstanceConflictError, match="already running on port 8181"):
        manager.resolve_identity(ServerConfig(name="myapp"), project_dir, force=True)


def test_project_with_running_server_refuses_second_name(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path, alive=True)
    _seed(manager, "myapp", project_dir, pid=4242)

    with pytest.raises(InstanceConflictError, match="already running for project: myapp"):
        manager.start(StartOptions(project_dir=project_dir, name="other", dry_run=True))
    assert not manager.repository.exists("other")


def test_dry_run_start_builds_plan_without_side_effects(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path)
    seen: list[str] = []

    outcome = manager.start(
        StartOptions(project_dir=project_dir, port=8300, dry_run=True),
        on_prepared=lambda plan, preparation: seen.append(plan.config.name),
    )

    assert seen == ["myapp"]
    assert outcome.instance is None
    assert outcome.plan.config.port == 8300
    assert outcome.plan.config.effective_shutdown_port == 9300
    assert outcome.plan.restart is False
    assert outcome.plan.ports.summary() == "All ports are available."
    assert any("not downloaded yet" in warning for warning in outcome.preparation.all_warnings)
    assert not outcome.plan.instance_dir.exists()


def test_start_reassigns_busy_port(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path)
    manager.port_probe = lambda port: port != 8181

    outcome = manager.start(StartOptions(project_dir=project_dir, dry_run=True))

    assert outcome.plan.ports.has_conflicts
    assert outcome.plan.config.port == 8182
    assert outcome.plan.to_dict()["conflicts"]


def test_port_conflicts_reported_before_provider_failure(
    tmp_path: Path, project_dir: Path
) -> None:
    manager = _manager(tmp_path)
    manager.port_probe = lambda port: port != 8181
    (project_dir / "lucee.json").write_text(
        json.dumps({"name": "myapp", "port": 8181, "runtime": {"type": "tomcat"}})
    )
    seen: list[PortResolution] = []

    with pytest.raises(InstallationError, match="CATALINA_HOME"):
        manager.start(
            StartOptions(project_dir=project_dir, dry_run=True),
            on_ports_resolved=seen.append,
        )

    assert len(seen) == 1
    assert seen[0].config.port == 8182
    assert [conflict.requested for conflict in seen[0].conflicts] == [8181]


def test_start_name_override(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path)

    outcome = manager.start(StartOptions(project_dir=project_dir, name=" api ", dry_run=True))

    assert outcome.plan.config.name == "api"
    assert outcome.plan.instance_dir == manager.repository.root / "api"


def test_stop_unknown_and_stopped(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path)

    unknown = manager.stop("ghost")
    assert (unknown.found, unknown.was_running) == (False, False)

    _seed(manager, "myapp", project_dir, pid=4242)
    stale = manager.stop("myapp")
    assert (stale.found, stale.was_running, stale.stopped) == (True, False, False)
    assert manager.repository.read_pid("myapp") is None


def test_stop_running_terminates_process(
    tmp_path: Path, project_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    terminated: list[int] = []

    def fake_terminate(self: ProcessManager, pid: int, *, timeout: float | None = None) -> bool:
        terminated.append(pid)
        return True

    monkeypatch.setattr(ProcessManager, "terminate", fake_terminate)
    manager = _manager(tmp_path, alive=True)
    _seed(manager, "myapp", project_dir, pid=4242)

    outcome = manager.stop("myapp")

    assert outcome.stopped is True
    assert terminated == [4242]
    assert manager.repository.read_pid("myapp") is None


def test_resolve_name_prefers_project_instance(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path)

    assert manager.resolve_name(project_dir) == "myapp"
    assert manager.resolve_name(project_dir, " explicit ") == "explicit"

    _seed(manager, "renamed", project_dir)
    assert manager.resolve_name(project_dir) == "renamed"

    bare = tmp_path / "bare-project"
    bare.mkdir()
    assert manager.resolve_name(bare) == "bare-project"


def test_prune_named_and_all(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path)
    _seed(manager, "old", tmp_path / "old")
    _seed(manager, "older", tmp_path / "older")

    with pytest.raises(InstanceConflictError):
        manager.prune()

    assert manager.prune(name="old").removed == ("old",)
    assert manager.prune(name="missing").removed == ()

    outcome = manager.prune(all_stopped=True)
    assert outcome.removed == ("older",)
    assert manager.list_instances() == []


def test_prune_refuses_running_instance(tmp_path: Path, project_dir: Path) -> None:
    manager = _manager(tmp_path, alive=True)
    _seed(manager, "live", project_dir, pid=4242)

    with pytest.raises(InstanceConflictError, match="is running"):
        manager.prune(name="live")
    assert manager.prune(all_stopped=True).skipped == ("live",)
