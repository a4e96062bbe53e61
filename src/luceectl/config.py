"""Tool settings loader for luceectl.

This module centralises the logic for reading luceectl's own settings (not a
project's ``lucee.json``) from multiple sources:

1. Built-in defaults.
2. ``<home>/config.yml`` (or an override path).
3. Environment variables prefixed with ``LUCEECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

The home directory itself is resolved once by :func:`resolve_home` and then
threaded through as a value: CLI ``--home`` first, then ``LUCEECTL_HOME``,
then ``~/.luceectl``.

Environment keys use double underscores to express nesting, e.g.::

    export LUCEECTL_PORTS__SCAN_LIMIT=50
    export LUCEECTL_LIFECYCLE__STARTUP_TIMEOUT=90

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "LUCEECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
HOME_ENV_VAR = f"{ENV_PREFIX}HOME"
DEFAULT_HOME = Path("~/.luceectl")
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    HOME_ENV_VAR,
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port resolution defaults."""

    scan_limit: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"scan_limit": self.scan_limit}


@dataclass(frozen=True)
class LifecycleConfig:
    """Timeouts governing server launch, readiness and shutdown."""

    startup_timeout: float = 30.0
    poll_interval: float = 1.0
    stop_timeout: float = 10.0
    version_detect_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "startup_timeout": self.startup_timeout,
            "poll_interval": self.poll_interval,
            "stop_timeout": self.stop_timeout,
            "version_detect_timeout": self.version_detect_timeout,
        }


@dataclass(frozen=True)
class DownloadsConfig:
    """Locations used to fetch Lucee Express bundles and Lucee jars."""

    express_url: str = "https://cdn.lucee.org/lucee-express-{version}.zip"
    jar_url: str = "https://cdn.lucee.org/lucee-{version}.jar"
    timeout: float = 120.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "express_url": self.express_url,
            "jar_url": self.jar_url,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for luceectl."""

    config_file: Path
    home: Path
    servers_dir: Path
    express_dir: Path
    jars_dir: Path
    patches_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    default_lucee_version: str
    java_bin: str
    docker_bin: str
    ports: PortsConfig
    lifecycle: LifecycleConfig
    downloads: DownloadsConfig
    compat_file: Path | None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "home": str(self.home),
            "servers_dir": str(self.servers_dir),
            "express_dir": str(self.express_dir),
            "jars_dir": str(self.jars_dir),
            "patches_dir": str(self.patches_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "default_lucee_version": self.default_lucee_version,
            "java_bin": self.java_bin,
            "docker_bin": self.docker_bin,
            "ports": self.ports.to_dict(),
            "lifecycle": self.lifecycle.to_dict(),
            "downloads": self.downloads.to_dict(),
            "compat_file": str(self.compat_file) if self.compat_file else None,
        }


# Directory defaults of ``None`` are derived from ``home`` when absent.
DEFAULTS: dict[str, object] = {
    "config_file": None,
    "servers_dir": None,
    "express_dir": None,
    "jars_dir": None,
    "patches_dir": None,
    "logs_dir": None,
    "runtime_dir": None,
    "templates_dir": None,
    "lock_timeout": 30.0,
    "default_lucee_version": "6.2.2.91",
    "java_bin": "java",
    "docker_bin": "docker",
    "ports": {
        "scan_limit": 100,
    },
    "lifecycle": {
        "startup_timeout": 30.0,
        "poll_interval": 1.0,
        "stop_timeout": 10.0,
        "version_detect_timeout": 10.0,
    },
    "downloads": {
        "express_url": "https://cdn.lucee.org/lucee-express-{version}.zip",
        "jar_url": "https://cdn.lucee.org/lucee-{version}.jar",
        "timeout": 120.0,
    },
    "compat_file": None,
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_HOME_SUBDIRS = {
    "servers_dir": "servers",
    "express_dir": "express",
    "jars_dir": "jars",
    "patches_dir": "patches",
    "logs_dir": "logs",
    "runtime_dir": "run",
    "templates_dir": "templates",
}


def resolve_home(
    cli_override: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Return the luceectl home directory.

    The CLI override wins over ``LUCEECTL_HOME``, which wins over
    ``~/.luceectl``. No global state is consulted besides *env*.
    """
    if cli_override:
        return Path(cli_override).expanduser()
    resolved_env = os.environ if env is None else env
    value = resolved_env.get(HOME_ENV_VAR, "").strip()
    if value:
        return Path(value).expanduser()
    return DEFAULT_HOME.expanduser()


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    home: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    home_path = resolve_home(home, resolved_env)
    config_path = _determine_config_path(home_path / "config.yml", config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)
    merged["home"] = str(home_path)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: Path,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return default_path


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in (
        ("ports", {"scan_limit"}),
        ("lifecycle", {"startup_timeout", "poll_interval", "stop_timeout", "version_detect_timeout"}),
        ("downloads", {"express_url", "jar_url", "timeout"}),
    ):
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    downloads = _as_dict(raw.get("downloads"), "downloads")
    for key in ("express_url", "jar_url"):
        template = downloads.get(key)
        if template is not None and "{version}" not in str(template):
            raise ConfigError(f"downloads.{key} must contain a '{{version}}' placeholder.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    home = _to_path(raw.get("home"))

    derived: dict[str, Path] = {}
    for key, subdir in _HOME_SUBDIRS.items():
        value = raw.get(key)
        derived[key] = _to_path(value) if value else home / subdir

    compat_value = raw.get("compat_file")
    compat_file: Path | None = None
    if isinstance(compat_value, (str, Path)):
        if str(compat_value).strip():
            compat_file = _to_path(compat_value)
    elif compat_value not in (None, ""):
        raise ConfigError("compat_file must be a string, Path, or null.")

    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    scan_limit = _expect_int(ports_mapping.get("scan_limit"), "ports.scan_limit", default=100)
    if scan_limit < 1:
        raise ConfigError("ports.scan_limit must be at least 1.")
    ports = PortsConfig(scan_limit=scan_limit)

    lifecycle_mapping = _as_dict(raw.get("lifecycle"), "lifecycle")
    lifecycle = LifecycleConfig(
        startup_timeout=_expect_positive_float(
            lifecycle_mapping.get("startup_timeout"), "lifecycle.startup_timeout", default=30.0
        ),
        poll_interval=_expect_positive_float(
            lifecycle_mapping.get("poll_interval"), "lifecycle.poll_interval", default=1.0
        ),
        stop_timeout=_expect_positive_float(
            lifecycle_mapping.get("stop_timeout"), "lifecycle.stop_timeout", default=10.0
        ),
        version_detect_timeout=_expect_positive_float(
            lifecycle_mapping.get("version_detect_timeout"),
            "lifecycle.version_detect_timeout",
            default=10.0,
        ),
    )

    downloads_mapping = _as_dict(raw.get("downloads"), "downloads")
    defaults = DownloadsConfig()
    downloads = DownloadsConfig(
        express_url=str(downloads_mapping.get("express_url", defaults.express_url)),
        jar_url=str(downloads_mapping.get("jar_url", defaults.jar_url)),
        timeout=_expect_positive_float(
            downloads_mapping.get("timeout"), "downloads.timeout", default=defaults.timeout
        ),
    )

    return AppConfig(
        config_file=config_file,
        home=home,
        servers_dir=derived["servers_dir"],
        express_dir=derived["express_dir"],
        jars_dir=derived["jars_dir"],
        patches_dir=derived["patches_dir"],
        logs_dir=derived["logs_dir"],
        runtime_dir=derived["runtime_dir"],
        templates_dir=derived["templates_dir"],
        lock_timeout=lock_timeout,
        default_lucee_version=str(raw.get("default_lucee_version", "6.2.2.91")),
        java_bin=str(raw.get("java_bin", "java")),
        docker_bin=str(raw.get("docker_bin", "docker")),
        ports=ports,
        lifecycle=lifecycle,
        downloads=downloads,
        compat_file=compat_file,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DownloadsConfig",
    "LifecycleConfig",
    "PortsConfig",
    "resolve_home",
    "load_config",
]
