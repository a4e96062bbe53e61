"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from luceectl.config import AppConfig, ConfigError, load_config, resolve_home


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults are derived from the home directory."""
    config = load_config(home=tmp_path, env={})

    assert isinstance(config, AppConfig)
    assert config.home == tmp_path
    assert config.config_file == tmp_path / "config.yml"
    assert config.servers_dir == tmp_path / "servers"
    assert config.express_dir == tmp_path / "express"
    assert config.logs_dir == tmp_path / "logs"
    assert config.lock_timeout == 30.0
    assert config.ports.scan_limit == 100
    assert config.lifecycle.startup_timeout == 30.0
    assert "{version}" in config.downloads.express_url


def test_home_resolution_order(tmp_path: Path) -> None:
    """CLI override beats LUCEECTL_HOME, which beats ~/.luceectl."""
    env = {"LUCEECTL_HOME": str(tmp_path / "env-home")}

    assert resolve_home(tmp_path / "cli-home", env) == tmp_path / "cli-home"
    assert resolve_home(None, env) == tmp_path / "env-home"
    assert resolve_home(None, {}) == Path("~/.luceectl").expanduser()


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the home's config.yml."""
    (tmp_path / "config.yml").write_text(
        "java_bin: /opt/java/bin/java\n"
        "ports:\n"
        "  scan_limit: 20\n"
        "lifecycle:\n"
        "  startup_timeout: 90\n"
        f"servers_dir: {tmp_path / 'elsewhere'}\n"
    )

    config = load_config(home=tmp_path, env={})

    assert config.java_bin == "/opt/java/bin/java"
    assert config.ports.scan_limit == 20
    assert config.lifecycle.startup_timeout == 90.0
    assert config.servers_dir == tmp_path / "elsewhere"
    assert config.jars_dir == tmp_path / "jars"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    (tmp_path / "config.yml").write_text("lock_timeout: 10\n")
    env = {
        "LUCEECTL_LOCK_TIMEOUT": "45",
        "LUCEECTL_PORTS__SCAN_LIMIT": "7",
        "LUCEECTL_DOCKER_BIN": "podman",
    }

    config = load_config(home=tmp_path, env=env)

    assert config.lock_timeout == 45.0
    assert config.ports.scan_limit == 7
    assert config.docker_bin == "podman"


def test_explicit_overrides_win(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) win over the environment."""
    config = load_config(
        home=tmp_path,
        env={"LUCEECTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 3},
    )

    assert config.lock_timeout == 3.0


def test_config_file_env_var(tmp_path: Path) -> None:
    """LUCEECTL_CONFIG_FILE points at an alternative file."""
    cfg = tmp_path / "custom.yml"
    cfg.write_text("default_lucee_version: 5.4.6.9\n")

    config = load_config(home=tmp_path, env={"LUCEECTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.default_lucee_version == "5.4.6.9"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("bogus: 1\n", "Unknown configuration keys: bogus"),
        ("ports:\n  base: 1\n", "Unknown ports configuration keys: base"),
        ("lock_timeout: -1\n", "greater than zero"),
        ("downloads:\n  jar_url: https://x/lucee.jar\n", "placeholder"),
        ("ports:\n  scan_limit: 0\n", "at least 1"),
        ("- a\n- b\n", "mapping at the top level"),
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str, message: str) -> None:
    """Invalid values surface as ConfigError."""
    (tmp_path / "config.yml").write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(home=tmp_path, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """to_dict renders paths as strings."""
    data = load_config(home=tmp_path, env={}).to_dict()

    assert data["home"] == str(tmp_path)
    assert data["lifecycle"]["poll_interval"] == 1.0
    assert data["compat_file"] is None
