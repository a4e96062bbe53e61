"""Tests for the luceectl command line interface."""
from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from luceectl import __version__
from luceectl.cli import app, exit_code_for, server_url
from luceectl.exit_codes import ExitCode
from luceectl.manager import InstanceConflictError
from luceectl.providers import InstallationError, ProviderError
from luceectl.server_config import HttpsConfig, ServerConfig
from luceectl.state import ServerRepository

runner = CliRunner()

# Far above pid_max on Linux, so never alive.
DEAD_PID = 99_999_999


def _prepare_environment(tmp_path: Path) -> tuple[dict[str, str], Path]:
    """Return an environment pointing LUCEECTL_HOME at a scratch directory."""
    home = tmp_path / "home"
    return {"LUCEECTL_HOME": str(home)}, home


def _seed(home: Path, name: str, project: Path, *, port: int = 8181) -> Path:
    """Create a stopped instance directory for *project*."""
    repository = ServerRepository(home / "servers")
    repository.record_start(name, project_dir=project, environment=None, runtime_type="tomcat")
    repository.write_pid(name, DEAD_PID, port)
    return repository.instance_dir(name)


def _last_operation(home: Path) -> dict[str, object]:
    lines = (home / "logs" / "operations.jsonl").read_text().splitlines()
    return json.loads(lines[-1])


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"luceectl {__version__}" in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Usage" in result.stdout
    assert "start" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` reports directories derived from the home."""
    env, home = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["home"] == str(home)
    assert payload["servers_dir"] == str(home / "servers")
    assert payload["default_lucee_version"] == "6.2.2.91"


def test_home_option_overrides_environment(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)
    other = tmp_path / "other-home"

    result = runner.invoke(app, ["--home", str(other), "config", "show", "--json"], env=env)

    assert result.exit_code == 0
    assert _extract_json(result.stdout)["home"] == str(other)


def test_invalid_tool_config_exits_with_validation_code(tmp_path: Path) -> None:
    env, home = _prepare_environment(tmp_path)
    home.mkdir()
    (home / "config.yml").write_text("unknown_key: 1\n")

    result = runner.invoke(app, ["list"], env=env)

    assert result.exit_code == int(ExitCode.VALIDATION)


def test_list_json_and_table(tmp_path: Path, project_dir: Path) -> None:
    env, home = _prepare_environment(tmp_path)

    empty = runner.invoke(app, ["list", "--json"], env=env)
    assert empty.exit_code == 0
    assert _extract_json(empty.stdout) == {"servers": []}

    _seed(home, "myapp", project_dir)
    result = runner.invoke(app, ["list", "--json"], env=env)
    servers = _extract_json(result.stdout)["servers"]
    assert [server["name"] for server in servers] == ["myapp"]
    assert servers[0]["status"] == "stopped"

    table = runner.invoke(app, ["list"], env=env)
    assert table.exit_code == 0
    assert "myapp" in table.stdout


def test_status_unknown_server(tmp_path: Path, project_dir: Path) -> None:
    """An unknown server is a validation error."""
    env, home = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["status", str(project_dir)], env=env)

    assert result.exit_code == int(ExitCode.VALIDATION)
    record = _last_operation(home)
    assert record["command"] == "status"
    assert record["result"]["status"] == "error"  # type: ignore[index]


def test_status_json_for_project(tmp_path: Path, project_dir: Path) -> None:
    env, home = _prepare_environment(tmp_path)
    _seed(home, "myapp", project_dir)

    result = runner.invoke(app, ["status", str(project_dir), "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["name"] == "myapp"
    assert payload["status"] == "stopped"
    assert payload["runtime"] == "tomcat"


def test_stop_unknown_server_is_not_an_error(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["stop", "--name", "ghost"], env=env)

    assert result.exit_code == 0
    assert "Server 'ghost' is not running." in result.stdout


def test_prune_requires_exactly_one_selector(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)

    neither = runner.invoke(app, ["prune"], env=env)
    both = runner.invoke(app, ["prune", "--name", "x", "--all"], env=env)

    assert neither.exit_code == int(ExitCode.VALIDATION)
    assert both.exit_code == int(ExitCode.VALIDATION)


def test_prune_all_removes_stopped(tmp_path: Path, project_dir: Path) -> None:
    env, home = _prepare_environment(tmp_path)
    instance = _seed(home, "myapp", project_dir)

    result = runner.invoke(app, ["prune", "--all"], env=env)

    assert result.exit_code == 0
    assert "Removed myapp" in result.stdout
    assert not instance.exists()
    again = runner.invoke(app, ["prune", "--all"], env=env)
    assert "Nothing to prune." in again.stdout


def test_log_tails_server_output(tmp_path: Path, project_dir: Path) -> None:
    env, home = _prepare_environment(tmp_path)
    instance = _seed(home, "myapp", project_dir)
    logs = instance / "logs"
    logs.mkdir()
    (logs / "server.out").write_text("".join(f"line {n}\n" for n in range(5)))

    result = runner.invoke(app, ["log", str(project_dir), "--lines", "2"], env=env)

    assert result.exit_code == 0
    assert "line 3" in result.stdout
    assert "line 4" in result.stdout
    assert "line 2" not in result.stdout


def test_log_missing_file(tmp_path: Path, project_dir: Path) -> None:
    env, home = _prepare_environment(tmp_path)
    _seed(home, "myapp", project_dir)

    result = runner.invoke(app, ["log", str(project_dir), "--type", "web"], env=env)

    assert result.exit_code == int(ExitCode.VALIDATION)


def test_monitor_json_for_stopped_server(tmp_path: Path, project_dir: Path) -> None:
    env, home = _prepare_environment(tmp_path)
    _seed(home, "myapp", project_dir)

    result = runner.invoke(app, ["monitor", str(project_dir), "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["running"] is False
    assert payload["process"] is None


def test_start_dry_run_express(tmp_path: Path, project_dir: Path) -> None:
    """A dry run previews the start and spawns nothing."""
    env, home = _prepare_environment(tmp_path)
    before = (project_dir / "lucee.json").read_text()

    result = runner.invoke(app, ["start", str(project_dir), "--dry-run"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Dry run" in result.stdout
    assert "not downloaded yet" in result.stdout
    assert not (home / "servers" / "myapp").exists()
    assert not (home / "express").exists()
    assert (project_dir / "lucee.json").read_text() == before
    record = _last_operation(home)
    assert record["command"] == "start"
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["context"]["name"] == "myapp"  # type: ignore[index]


def test_start_dry_run_without_config_does_not_write(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)
    project = tmp_path / "fresh"
    project.mkdir()

    result = runner.invoke(app, ["start", str(project), "--dry-run"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Would create" in result.stdout
    assert not (project / "lucee.json").exists()


def test_start_with_invalid_project_config(tmp_path: Path, project_dir: Path) -> None:
    env, _ = _prepare_environment(tmp_path)
    (project_dir / "lucee.json").write_text("[1, 2]")

    result = runner.invoke(app, ["start", str(project_dir), "--dry-run"], env=env)

    assert result.exit_code == int(ExitCode.VALIDATION)


def test_exit_code_mapping() -> None:
    assert exit_code_for(InstanceConflictError("x")) is ExitCode.VALIDATION
    assert exit_code_for(InstallationError("x")) is ExitCode.ENVIRONMENT
    assert exit_code_for(ProviderError("x")) is ExitCode.PROVIDER


def test_server_url() -> None:
    assert server_url(ServerConfig(name="a", port=8181)) == "http://localhost:8181/"
    secure = ServerConfig(name="a", https=HttpsConfig(enabled=True, port=8443, redirect=True))
    assert server_url(secure) == "https://localhost:8443/"
    custom = ServerConfig(name="a", open_browser_url="http://example.test/")
    assert server_url(custom) == "http://example.test/"
