"""Typed model of a project's ``lucee.json``.

Loading a project configuration runs through a fixed pipeline:

1. read ``lucee.json`` (defaults when the file is missing);
2. migrate legacy shapes (top-level ``version``, string ``runtime``);
3. deep-merge the selected ``environments.<name>`` overlay;
4. substitute ``#env:...#`` and ``${...}`` references using the project's
   ``.env`` file and the process environment;
5. coerce into frozen dataclasses and check the invariants.

Every value object is immutable; use :func:`dataclasses.replace` to derive an
updated copy (the port resolver does exactly that).
"""
from __future__ import annotations

import json
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

from .variables import VariableResolver, contains_reference

CONFIG_FILE_NAME = "lucee.json"
DEFAULT_LUCEE_VERSION = "6.2.2.91"
DEFAULT_HTTP_PORT = 8080
DEFAULT_HTTPS_PORT = 8443
DEFAULT_JMX_PORT = 8999
SHUTDOWN_PORT_OFFSET = 1000


class ServerConfigError(RuntimeError):
    """Raised when a project configuration is malformed or inconsistent."""


# ----------------------------------------------------------------------
# Value objects
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class HttpsConfig:
    """HTTPS connector settings."""

    enabled: bool = False
    port: int = DEFAULT_HTTPS_PORT
    redirect: bool | None = None
    keystore: str | None = None
    keystore_password: str | None = None
    key_alias: str = "luceectl"

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        payload: dict[str, object] = {"enabled": self.enabled, "port": self.port}
        if self.redirect is not None:
            payload["redirect"] = self.redirect
        if self.keystore is not None:
            payload["keystore"] = self.keystore
        if self.keystore_password is not None:
            payload["keystorePassword"] = self.keystore_password
        if self.key_alias != "luceectl":
            payload["keyAlias"] = self.key_alias
        return payload


@dataclass(frozen=True)
class UrlRewriteConfig:
    """URL rewriting settings."""

    enabled: bool = True
    router_file: str = "index.cfm"
    config_file: str = "rewrite.config"

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        return {
            "enabled": self.enabled,
            "routerFile": self.router_file,
            "configFile": self.config_file,
        }


@dataclass(frozen=True)
class JvmConfig:
    """Heap sizing and extra JVM arguments."""

    max_memory: str = "512m"
    min_memory: str = "128m"
    additional_args: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        return {
            "maxMemory": self.max_memory,
            "minMemory": self.min_memory,
            "additionalArgs": list(self.additional_args),
        }


@dataclass(frozen=True)
class MonitoringConfig:
    """JMX monitoring settings."""

    enabled: bool = True
    jmx_port: int = DEFAULT_JMX_PORT

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        return {"enabled": self.enabled, "jmx": {"port": self.jmx_port}}


@dataclass(frozen=True)
class AdminConfig:
    """Lucee administrator settings."""

    enabled: bool = True
    password: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        payload: dict[str, object] = {"enabled": self.enabled}
        if self.password is not None:
            payload["password"] = self.password
        return payload


@dataclass(frozen=True)
class AgentConfig:
    """A named Java agent that can be toggled per start."""

    enabled: bool = False
    jvm_args: tuple[str, ...] = ()
    description: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        payload: dict[str, object] = {"enabled": self.enabled, "jvmArgs": list(self.jvm_args)}
        if self.description is not None:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class LuceeConfig:
    """Engine version selection."""

    version: str = DEFAULT_LUCEE_VERSION
    variant: str = "standard"

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        return {"version": self.version, "variant": self.variant}


# Runtime variants ------------------------------------------------------
@dataclass(frozen=True)
class ExpressRuntime:
    """The Lucee Express bundle downloaded and managed by luceectl."""

    type: ClassVar[str] = "lucee-express"

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        return {"type": self.type}


@dataclass(frozen=True)
class TomcatRuntime:
    """An existing Tomcat installation (``CATALINA_HOME``)."""

    type: ClassVar[str] = "tomcat"
    catalina_home: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        payload: dict[str, object] = {"type": self.type}
        if self.catalina_home:
            payload["catalinaHome"] = self.catalina_home
        return payload


@dataclass(frozen=True)
class JettyRuntime:
    """An existing Jetty installation (``JETTY_HOME``)."""

    type: ClassVar[str] = "jetty"
    jetty_home: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        payload: dict[str, object] = {"type": self.type}
        if self.jetty_home:
            payload["jettyHome"] = self.jetty_home
        return payload


@dataclass(frozen=True)
class DockerRuntime:
    """A Lucee container image run through the docker CLI."""

    type: ClassVar[str] = "docker"
    image: str = "lucee/lucee"
    tag: str = "latest"
    container_name: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation."""
        payload: dict[str, object] = {"type": self.type, "image": self.image, "tag": self.tag}
        if self.container_name:
            payload["containerName"] = self.container_name
        return payload


RuntimeConfig = ExpressRuntime | TomcatRuntime | JettyRuntime | DockerRuntime

RUNTIME_TYPE_ALIASES: dict[str, str] = {
    "lucee-express": "lucee-express",
    "express": "lucee-express",
    "bundled": "lucee-express",
    "tomcat": "tomcat",
    "jetty": "jetty",
    "docker": "docker",
}
_RUNTIME_KEYS: dict[str, set[str]] = {
    "lucee-express": {"type"},
    "tomcat": {"type", "catalinaHome"},
    "jetty": {"type", "jettyHome"},
    "docker": {"type", "image", "tag", "containerName"},
}


@dataclass(frozen=True)
class ServerConfig:
    """Immutable, fully resolved ``lucee.json`` contents."""

    name: str
    port: int = DEFAULT_HTTP_PORT
    host: str | None = None
    shutdown_port: int | None = None
    webroot: str = "./"
    enable_lucee: bool = True
    enable_rest: bool = False
    open_browser: bool = True
    open_browser_url: str | None = None
    https: HttpsConfig = field(default_factory=HttpsConfig)
    url_rewrite: UrlRewriteConfig = field(default_factory=UrlRewriteConfig)
    jvm: JvmConfig = field(default_factory=JvmConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    lucee: LuceeConfig = field(default_factory=LuceeConfig)
    runtime: RuntimeConfig = field(default_factory=ExpressRuntime)
    agents: Mapping[str, AgentConfig] = field(default_factory=dict)
    env_vars: Mapping[str, str] = field(default_factory=dict)
    environments: Mapping[str, Mapping[str, object]] = field(default_factory=dict)
    configuration: Mapping[str, object] | None = None
    configuration_file: str | None = None

    # Derived values ------------------------------------------------------
    @property
    def effective_host(self) -> str:
        """Return the host name, defaulting to ``localhost``."""
        return self.host.strip() if self.host and self.host.strip() else "localhost"

    @property
    def effective_shutdown_port(self) -> int:
        """Return the shutdown port, defaulting to HTTP port + 1000."""
        if self.shutdown_port is not None:
            return self.shutdown_port
        return self.port + SHUTDOWN_PORT_OFFSET

    @property
    def https_enabled(self) -> bool:
        """Return whether the HTTPS connector is configured."""
        return self.https.enabled

    @property
    def effective_https_port(self) -> int:
        """Return the HTTPS port (8443 unless configured)."""
        return self.https.port

    @property
    def https_redirect_enabled(self) -> bool:
        """Return whether HTTP requests are redirected to HTTPS."""
        if not self.https.enabled:
            return False
        return True if self.https.redirect is None else self.https.redirect

    @property
    def jmx_port(self) -> int | None:
        """Return the JMX port when monitoring is enabled."""
        return self.monitoring.jmx_port if self.monitoring.enabled else None

    @property
    def runtime_type(self) -> str:
        """Return the runtime discriminator (``lucee-express``, ``tomcat``...)."""
        return self.runtime.type

    @property
    def lucee_version(self) -> str:
        """Return the configured Lucee version."""
        return self.lucee.version

    def resolve_webroot(self, project_dir: Path) -> Path:
        """Return the absolute, normalised document root."""
        candidate = Path(self.webroot or "./").expanduser()
        if candidate.is_absolute():
            return Path(os.path.normpath(candidate))
        return Path(os.path.normpath(project_dir.resolve() / candidate))

    def to_dict(self) -> dict[str, object]:
        """Return the ``lucee.json`` representation (camelCase keys)."""
        payload: dict[str, object] = {
            "name": self.name,
            "lucee": self.lucee.to_dict(),
            "port": self.port,
        }
        if self.host is not None:
            payload["host"] = self.host
        if self.shutdown_port is not None:
            payload["shutdownPort"] = self.shutdown_port
        payload.update(
            {
                "webroot": self.webroot,
                "runtime": self.runtime.to_dict(),
                "enableLucee": self.enable_lucee,
                "enableREST": self.enable_rest,
                "openBrowser": self.open_browser,
                "jvm": self.jvm.to_dict(),
                "monitoring": self.monitoring.to_dict(),
                "urlRewrite": self.url_rewrite.to_dict(),
                "https": self.https.to_dict(),
                "admin": self.admin.to_dict(),
            }
        )
        if self.open_browser_url:
            payload["openBrowserURL"] = self.open_browser_url
        if self.agents:
            payload["agents"] = {key: agent.to_dict() for key, agent in self.agents.items()}
        if self.env_vars:
            payload["envVars"] = dict(self.env_vars)
        if self.environments:
            payload["environments"] = {key: dict(value) for key, value in self.environments.items()}
        if self.configuration is not None:
            payload["configuration"] = dict(self.configuration)
        if self.configuration_file is not None:
            payload["configurationFile"] = self.configuration_file
        return payload


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------
def load_server_config(
    project_dir: Path,
    *,
    environment: str | None = None,
    config_file: str = CONFIG_FILE_NAME,
    env: Mapping[str, str] | None = None,
) -> ServerConfig:
    """Load, overlay, substitute and validate the configuration for *project_dir*."""
    project_dir = Path(project_dir).expanduser()
    raw = read_raw_config(project_dir / config_file)
    raw = migrate_legacy(raw)
    if environment:
        raw = apply_environment(raw, environment)
    resolver = VariableResolver.for_project(project_dir, env)
    resolved = resolver.resolve(raw)
    if not isinstance(resolved, Mapping):  # pragma: no cover - resolve preserves mappings
        raise ServerConfigError("Configuration root must be a JSON object.")
    config = parse_server_config(resolved, default_name=project_dir.resolve().name)
    validate_server_config(config)
    return config


def read_raw_config(path: Path) -> dict[str, object]:
    """Return the JSON object stored at *path* (empty when absent)."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ServerConfigError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ServerConfigError(f"{path} must contain a JSON object at the top level.")
    return _as_dict(data, path.name)


def migrate_legacy(raw: Mapping[str, object]) -> dict[str, object]:
    """Rewrite deprecated shapes into the current structure.

    A top-level ``version`` moves into ``lucee.version`` unless the nested
    value is already present, a string ``runtime`` becomes ``{"type": ...}``
    and a string ``jvm.additionalArgs`` is split on whitespace.
    """
    migrated = _deep_copy(raw)
    legacy_version = migrated.pop("version", None)
    if legacy_version is not None:
        lucee = _as_dict(migrated.get("lucee"), "lucee")
        lucee.setdefault("version", str(legacy_version))
        migrated["lucee"] = lucee

    runtime = migrated.get("runtime")
    if isinstance(runtime, str):
        migrated["runtime"] = {"type": runtime}

    jvm = migrated.get("jvm")
    if isinstance(jvm, MutableMapping):
        extra = jvm.get("additionalArgs")
        if isinstance(extra, str):
            jvm["additionalArgs"] = extra.split()
    return migrated


def apply_environment(raw: Mapping[str, object], environment: str) -> dict[str, object]:
    """Deep-merge ``environments[environment]`` over *raw*."""
    environments = _as_dict(raw.get("environments"), "environments")
    if environment not in environments:
        available = ", ".join(sorted(environments)) or "none defined"
        raise ServerConfigError(
            f"Environment '{environment}' is not defined in lucee.json (available: {available})."
        )
    overlay = migrate_legacy(_as_dict(environments[environment], f"environments.{environment}"))
    overlay.pop("environments", None)
    merged = _deep_copy(raw)
    _deep_merge(merged, overlay)
    return merged


def parse_server_config(raw: Mapping[str, object], *, default_name: str) -> ServerConfig:
    """Coerce a substituted mapping into a :class:`ServerConfig`."""
    name = _optional_str(raw.get("name"), "name") or default_name
    https_map = _as_dict(raw.get("https"), "https")
    rewrite_map = _as_dict(raw.get("urlRewrite"), "urlRewrite")
    jvm_map = _as_dict(raw.get("jvm"), "jvm")
    monitoring_map = _as_dict(raw.get("monitoring"), "monitoring")
    jmx_map = _as_dict(monitoring_map.get("jmx"), "monitoring.jmx")
    admin_map = _as_dict(raw.get("admin"), "admin")
    lucee_map = _as_dict(raw.get("lucee"), "lucee")

    https = HttpsConfig(
        enabled=_bool(https_map.get("enabled"), "https.enabled", default=False),
        port=_port(https_map.get("port"), "https.port", default=DEFAULT_HTTPS_PORT),
        redirect=(
            None
            if https_map.get("redirect") is None
            else _bool(https_map.get("redirect"), "https.redirect", default=True)
        ),
        keystore=_optional_str(https_map.get("keystore"), "https.keystore"),
        keystore_password=_optional_str(
            https_map.get("keystorePassword"), "https.keystorePassword"
        ),
        key_alias=_optional_str(https_map.get("keyAlias"), "https.keyAlias") or "luceectl",
    )
    url_rewrite = UrlRewriteConfig(
        enabled=_bool(rewrite_map.get("enabled"), "urlRewrite.enabled", default=True),
        router_file=_optional_str(rewrite_map.get("routerFile"), "urlRewrite.routerFile")
        or "index.cfm",
        config_file=_optional_str(rewrite_map.get("configFile"), "urlRewrite.configFile")
        or "rewrite.config",
    )
    jvm = JvmConfig(
        max_memory=_optional_str(jvm_map.get("maxMemory"), "jvm.maxMemory") or "512m",
        min_memory=_optional_str(jvm_map.get("minMemory"), "jvm.minMemory") or "128m",
        additional_args=_str_tuple(jvm_map.get("additionalArgs"), "jvm.additionalArgs"),
    )
    monitoring = MonitoringConfig(
        enabled=_bool(monitoring_map.get("enabled"), "monitoring.enabled", default=True),
        jmx_port=_port(jmx_map.get("port"), "monitoring.jmx.port", default=DEFAULT_JMX_PORT),
    )
    admin = AdminConfig(
        enabled=_bool(admin_map.get("enabled"), "admin.enabled", default=True),
        password=_optional_str(admin_map.get("password"), "admin.password"),
    )
    lucee = LuceeConfig(
        version=_optional_str(lucee_map.get("version"), "lucee.version") or DEFAULT_LUCEE_VERSION,
        variant=_optional_str(lucee_map.get("variant"), "lucee.variant") or "standard",
    )

    shutdown_raw = raw.get("shutdownPort")
    configuration = raw.get("configuration")
    if configuration is not None and not isinstance(configuration, Mapping):
        raise ServerConfigError("configuration must be a JSON object.")

    return ServerConfig(
        name=name,
        port=_port(raw.get("port"), "port", default=DEFAULT_HTTP_PORT),
        host=_optional_str(raw.get("host"), "host"),
        shutdown_port=(
            None if shutdown_raw in (None, "") else _port(shutdown_raw, "shutdownPort", default=0)
        ),
        webroot=_optional_str(raw.get("webroot"), "webroot") or "./",
        enable_lucee=_bool(raw.get("enableLucee"), "enableLucee", default=True),
        enable_rest=_bool(raw.get("enableREST"), "enableREST", default=False),
        open_browser=_bool(raw.get("openBrowser"), "openBrowser", default=True),
        open_browser_url=_optional_str(raw.get("openBrowserURL"), "openBrowserURL") or None,
        https=https,
        url_rewrite=url_rewrite,
        jvm=jvm,
        monitoring=monitoring,
        admin=admin,
        lucee=lucee,
        runtime=parse_runtime(raw.get("runtime")),
        agents=_parse_agents(raw.get("agents")),
        env_vars={
            key: str(value) for key, value in _as_dict(raw.get("envVars"), "envVars").items()
        },
        environments={
            key: _as_dict(value, f"environments.{key}")
            for key, value in _as_dict(raw.get("environments"), "environments").items()
        },
        configuration=dict(configuration) if isinstance(configuration, Mapping) else None,
        configuration_file=_optional_str(raw.get("configurationFile"), "configurationFile"),
    )


def parse_runtime(value: object) -> RuntimeConfig:
    """Return the runtime variant described by *value*."""
    if value is None:
        return ExpressRuntime()
    if isinstance(value, str):
        value = {"type": value}
    mapping = _as_dict(value, "runtime")
    raw_type = str(mapping.get("type") or "lucee-express").strip().lower()
    runtime_type = RUNTIME_TYPE_ALIASES.get(raw_type)
    if runtime_type is None:
        allowed = ", ".join(sorted(set(RUNTIME_TYPE_ALIASES.values())))
        raise ServerConfigError(f"Unknown runtime type '{raw_type}'. Allowed: {allowed}.")
    unknown = set(mapping) - _RUNTIME_KEYS[runtime_type]
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ServerConfigError(f"Runtime type '{runtime_type}' does not accept: {joined}.")

    if runtime_type == "tomcat":
        return TomcatRuntime(
            catalina_home=_optional_str(mapping.get("catalinaHome"), "runtime.catalinaHome")
        )
    if runtime_type == "jetty":
        return JettyRuntime(jetty_home=_optional_str(mapping.get("jettyHome"), "runtime.jettyHome"))
    if runtime_type == "docker":
        return DockerRuntime(
            image=_optional_str(mapping.get("image"), "runtime.image") or "lucee/lucee",
            tag=_optional_str(mapping.get("tag"), "runtime.tag") or "latest",
            container_name=_optional_str(mapping.get("containerName"), "runtime.containerName"),
        )
    return ExpressRuntime()


def validate_server_config(config: ServerConfig) -> None:
    """Check cross-field invariants, raising :class:`ServerConfigError`."""
    if not config.name.strip():
        raise ServerConfigError("Server name must be a non-empty string.")
    if "/" in config.name or "\\" in config.name or config.name in {".", ".."}:
        raise ServerConfigError(f"Server name '{config.name}' cannot contain path separators.")
    if config.port == config.effective_shutdown_port:
        raise ServerConfigError(
            f"HTTP port ({config.port}) and shutdown port ({config.effective_shutdown_port}) "
            "cannot be the same."
        )
    if config.https.enabled:
        if config.https.port == config.port:
            raise ServerConfigError(
                f"HTTPS port ({config.https.port}) and HTTP port ({config.port}) "
                "cannot be the same."
            )
        if config.https.port == config.effective_shutdown_port:
            raise ServerConfigError(
                f"HTTPS port ({config.https.port}) and shutdown port "
                f"({config.effective_shutdown_port}) cannot be the same."
            )


def create_default_config(
    project_dir: Path,
    *,
    name: str | None = None,
    lucee_version: str = DEFAULT_LUCEE_VERSION,
) -> ServerConfig:
    """Return the configuration written for a project without ``lucee.json``."""
    return ServerConfig(
        name=name or Path(project_dir).expanduser().resolve().name,
        lucee=LuceeConfig(version=lucee_version),
    )


def save_server_config(config: ServerConfig, path: Path) -> None:
    """Write *config* to *path* as pretty-printed JSON."""
    path.write_text(json.dumps(config.to_dict(), indent=2) + "\n", encoding="utf-8")


def resolve_configuration(config: ServerConfig, project_dir: Path) -> dict[str, object]:
    """Merge ``configurationFile`` with the inline ``configuration`` block.

    Inline values win and nested objects merge recursively. The result is the
    content of ``.CFConfig.json`` (empty when neither source is set).
    """
    merged: dict[str, object] = {}
    if config.configuration_file:
        source = Path(config.configuration_file).expanduser()
        if not source.is_absolute():
            source = project_dir / source
        if not source.is_file():
            raise ServerConfigError(f"configurationFile not found: {source}")
        try:
            loaded = json.loads(source.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ServerConfigError(f"Failed to parse configurationFile {source}: {exc}") from exc
        merged = _as_dict(loaded, "configurationFile")
    if config.configuration:
        _deep_merge(merged, _deep_copy(config.configuration))
    return merged


# Internal helpers -------------------------------------------------
def _parse_agents(value: object) -> dict[str, AgentConfig]:
    agents: dict[str, AgentConfig] = {}
    for agent_id, raw_agent in _as_dict(value, "agents").items():
        mapping = _as_dict(raw_agent, f"agents.{agent_id}")
        agents[agent_id] = AgentConfig(
            enabled=_bool(mapping.get("enabled"), f"agents.{agent_id}.enabled", default=False),
            jvm_args=_str_tuple(mapping.get("jvmArgs"), f"agents.{agent_id}.jvmArgs"),
            description=_optional_str(mapping.get("description"), f"agents.{agent_id}.description"),
        )
    return agents


def _port(value: object, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ServerConfigError(f"Expected {label} to be a port number. Got boolean {value!r}.")
    if isinstance(value, str):
        text = value.strip()
        if contains_reference(text):
            raise ServerConfigError(
                f"{label} still contains an unresolved variable reference: {text!r}."
            )
        try:
            number = int(text, 10)
        except ValueError as exc:
            raise ServerConfigError(f"Invalid port for {label}: {value!r}.") from exc
    elif isinstance(value, int):
        number = value
    else:
        raise ServerConfigError(f"Expected {label} to be a port number. Got {type(value).__name__}.")
    if not 1 <= number <= 65535:
        raise ServerConfigError(f"{label} must be between 1 and 65535. Got {number}.")
    return number


def _bool(value: object, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1", "on"}:
            return True
        if lowered in {"false", "no", "0", "off"}:
            return False
    raise ServerConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _optional_str(value: object, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    raise ServerConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _str_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    if isinstance(value, list):
        return tuple(str(item) for item in value)
    raise ServerConfigError(f"Expected {label} to be a list of strings. Got {type(value).__name__}.")


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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ServerConfigError(f"Expected {label} to be an object. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ServerConfigError(f"Object {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AdminConfig",
    "AgentConfig",
    "CONFIG_FILE_NAME",
    "DEFAULT_LUCEE_VERSION",
    "DockerRuntime",
    "ExpressRuntime",
    "HttpsConfig",
    "JettyRuntime",
    "JvmConfig",
    "LuceeConfig",
    "MonitoringConfig",
    "RuntimeConfig",
    "ServerConfig",
    "ServerConfigError",
    "TomcatRuntime",
    "UrlRewriteConfig",
    "apply_environment",
    "create_default_config",
    "load_server_config",
    "migrate_legacy",
    "parse_runtime",
    "parse_server_config",
    "read_raw_config",
    "resolve_configuration",
    "save_server_config",
    "validate_server_config",
]
