"""Build the per-instance ``CATALINA_BASE`` / ``JETTY_BASE`` directory.

Vendor configuration is copied from the installation into the instance and
only the copies are patched. Everything the builder would write goes
through :class:`_Recorder`, so a dry run yields the same action list without
touching the filesystem.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .extensions import ExtensionPlan, deploy_extensions, read_lock_file
from .jvm import build_catalina_opts, join_opts
from .keystore import KeystoreMaterial, ensure_keystore, verify_keystore
from .server_config import ServerConfig, resolve_configuration
from .templates import TemplateEngine, write_if_changed
from .xmlpatch import (
    HttpsConnectorOptions,
    ServerXmlOptions,
    ServerXmlPatcher,
    WebXmlOptions,
    WebXmlPatcher,
    build_rewrite_rules,
    rewrite_active,
)

LOGGER = logging.getLogger(__name__)

CATALINA_SKELETON = (
    "conf",
    "conf/Catalina/localhost",
    "logs",
    "temp",
    "work",
    "webapps",
    "lucee-server",
    "lucee-web",
    "bin",
)
JETTY_SKELETON = (
    "start.d",
    "webapps",
    "etc",
    "lib/ext",
    "logs",
    "temp",
    "lucee-server",
    "lucee-web",
)
OPTIONAL_VENDOR_FILES = (
    "catalina.properties",
    "catalina.policy",
    "context.xml",
    "tomcat-users.xml",
    "jaspic-providers.xml",
)
CFCONFIG_PATH = Path("lucee-server/context/.CFConfig.json")
_PLACEHOLDER = re.compile(r"\$\{([A-Za-z][A-Za-z0-9]*)\}")


class InstallationError(RuntimeError):
    """Raised when the runtime installation lacks a required file."""


@dataclass(frozen=True)
class PlaceholderMap:
    """Values shared by every generated or copied file of one instance."""

    values: Mapping[str, str]

    @classmethod
    def for_instance(
        cls,
        config: ServerConfig,
        *,
        instance_dir: Path,
        project_dir: Path,
        patches_dir: Path | None = None,
    ) -> PlaceholderMap:
        """Compute the map once for *config*."""
        values = {
            "httpPort": str(config.port),
            "shutdownPort": str(config.effective_shutdown_port),
            "jmxPort": str(config.monitoring.jmx_port),
            "httpsPort": str(config.effective_https_port),
            "host": config.effective_host,
            "webroot": str(config.resolve_webroot(project_dir)),
            "luceeServerPath": str(instance_dir / "lucee-server"),
            "luceeWebPath": str(instance_dir / "lucee-web"),
            "luceePatches": str(patches_dir) if patches_dir else "",
            "jvmRoute": config.name,
            "logLevel": "INFO",
            "routerFile": config.url_rewrite.router_file.lstrip("/"),
            "instanceDir": str(instance_dir),
            "projectDir": str(project_dir.resolve()),
        }
        return cls(values=values)

    def context(self, **extra: object) -> dict[str, object]:
        """Return a Jinja context holding the map plus *extra* values."""
        merged: dict[str, object] = dict(self.values)
        merged.update(extra)
        return merged

    def substitute(self, text: str) -> str:
        """Replace ``${key}`` for known keys; other placeholders stay untouched."""

        def _replace(match: re.Match[str]) -> str:
            return self.values.get(match.group(1), match.group(0))

        return _PLACEHOLDER.sub(_replace, text)


@dataclass(frozen=True)
class BuildRequest:
    """Inputs for one instance directory build."""

    config: ServerConfig
    project_dir: Path
    instance_dir: Path
    vendor_home: Path | None = None
    lucee_jar: Path | None = None
    jakarta: bool = False
    active_agents: tuple[str, ...] = ()
    force_replace: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class BuildResult:
    """What the builder did (or would do, for a dry run)."""

    instance_dir: Path
    actions: tuple[str, ...]
    warnings: tuple[str, ...]
    catalina_opts: tuple[str, ...]
    extensions: ExtensionPlan = field(default_factory=ExtensionPlan)
    keystore: KeystoreMaterial | None = None
    host_name: str = "localhost"
    dry_run: bool = False


class _Recorder:
    """Apply filesystem changes or merely record them."""

    def __init__(self, root: Path, *, dry_run: bool) -> None:
        self.root = root
        self.dry_run = dry_run
        self.actions: list[str] = []
        self.warnings: list[str] = []

    def label(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.root))
        except ValueError:
            return str(path)

    def note(self, action: str) -> None:
        self.actions.append(action)

    def warn(self, message: str) -> None:
        LOGGER.warning(message)
        self.warnings.append(message)

    def mkdir(self, path: Path) -> None:
        if path.is_dir():
            return
        self.note(f"create {self.label(path)}/")
        if not self.dry_run:
            path.mkdir(parents=True, exist_ok=True)

    def remove_tree(self, path: Path) -> None:
        if not path.exists():
            return
        self.note(f"remove {path}")
        if not self.dry_run:
            shutil.rmtree(path)

    def write(self, path: Path, content: str, *, mode: int = 0o644, verb: str = "write") -> None:
        self.note(f"{verb} {self.label(path)}")
        if not self.dry_run:
            write_if_changed(path, content, mode=mode)

    def copy(self, source: Path, path: Path) -> None:
        self.note(f"copy {source} -> {self.label(path)}")
        if not self.dry_run:
            path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, path)

    def unlink(self, path: Path) -> None:
        if not path.exists():
            return
        self.note(f"remove {self.label(path)}")
        if not self.dry_run:
            path.unlink()


@dataclass(slots=True)
class InstanceDirectoryBuilder:
    """Create and refresh instance directories from a :class:`ServerConfig`."""

    templates: TemplateEngine
    patches_dir: Path | None = None
    server_xml_patcher: ServerXmlPatcher = field(default_factory=ServerXmlPatcher)
    web_xml_patcher: WebXmlPatcher = field(default_factory=WebXmlPatcher)

    # ------------------------------------------------------------------
    # Catalina (Lucee Express and external Tomcat)
    # ------------------------------------------------------------------
    def build(self, request: BuildRequest) -> BuildResult:
        """Lay out a ``CATALINA_BASE`` for *request*."""
        if request.vendor_home is None:
            raise InstallationError("No Catalina installation given for the instance directory.")
        config = request.config
        base = request.instance_dir
        vendor_conf = request.vendor_home / "conf"
        server_xml_source = vendor_conf / "server.xml"
        if not server_xml_source.is_file():
            raise InstallationError(f"Required file missing from installation: {server_xml_source}")
        recorder = _Recorder(base, dry_run=request.dry_run)
        placeholders = self._prepare(request, recorder, CATALINA_SKELETON)

        self._copy_text(server_xml_source, base / "conf" / "server.xml", placeholders, recorder)
        web_xml_source = vendor_conf / "web.xml"
        if web_xml_source.is_file():
            self._copy_text(web_xml_source, base / "conf" / "web.xml", placeholders, recorder)
        else:
            recorder.write(
                base / "conf" / "web.xml",
                self.templates.render_to_string(
                    "tomcat/web.xml.j2", placeholders.context(jakarta=request.jakarta)
                ),
                verb="render",
            )
        logging_source = vendor_conf / "logging.properties"
        if logging_source.is_file():
            self._copy_text(logging_source, base / "conf" / "logging.properties", placeholders, recorder)
        else:
            recorder.write(
                base / "conf" / "logging.properties",
                self.templates.render_to_string("tomcat/logging.properties.j2", placeholders.context()),
                verb="render",
            )
        for name in OPTIONAL_VENDOR_FILES:
            source = vendor_conf / name
            if source.is_file():
                recorder.copy(source, base / "conf" / name)

        keystore = self._keystore(request, recorder)
        https_options = None
        if keystore is not None:
            https_options = HttpsConnectorOptions(
                port=config.effective_https_port,
                keystore_file=keystore.path,
                keystore_password=keystore.password,
                key_alias=keystore.alias,
            )

        rewrite = rewrite_active(config)
        host_name = "localhost"
        server_xml = base / "conf" / "server.xml"
        recorder.note("patch conf/server.xml")
        if not request.dry_run:
            result = self.server_xml_patcher.patch_file(
                server_xml,
                ServerXmlOptions(
                    http_port=config.port,
                    shutdown_port=config.effective_shutdown_port,
                    webroot=config.resolve_webroot(request.project_dir),
                    https=https_options,
                    rewrite=rewrite,
                ),
            )
            host_name = result.host_name
        self._patch_web_xml(request, base / "conf" / "web.xml", recorder)

        rewrite_file = base / "conf" / "Catalina" / host_name / "rewrite.config"
        if rewrite:
            rules = build_rewrite_rules(config, request.project_dir, self.templates)
            for warning in rules.warnings:
                recorder.warnings.append(warning)
            recorder.write(rewrite_file, rules.content)
        else:
            recorder.unlink(rewrite_file)

        catalina_opts = build_catalina_opts(config, request.active_agents)
        context = placeholders.context(catalinaOpts=join_opts(catalina_opts))
        recorder.write(
            base / "bin" / "setenv.sh",
            self.templates.render_to_string("tomcat/setenv.sh.j2", context),
            mode=0o755,
            verb="render",
        )
        recorder.write(
            base / "bin" / "setenv.bat",
            _crlf(self.templates.render_to_string("tomcat/setenv.bat.j2", context)),
            verb="render",
        )

        if request.lucee_jar is not None:
            self._install_jar(request.lucee_jar, base / "lib", recorder)
        extensions = self._finish(request, recorder)
        return BuildResult(
            instance_dir=base,
            actions=tuple(recorder.actions),
            warnings=tuple(recorder.warnings),
            catalina_opts=tuple(catalina_opts),
            extensions=extensions,
            keystore=keystore,
            host_name=host_name,
            dry_run=request.dry_run,
        )

    # ------------------------------------------------------------------
    # Jetty
    # ------------------------------------------------------------------
    def build_jetty(self, request: BuildRequest, *, jetty_major: int | None) -> BuildResult:
        """Lay out a ``JETTY_BASE`` for *request*."""
        config = request.config
        base = request.instance_dir
        recorder = _Recorder(base, dry_run=request.dry_run)
        placeholders = self._prepare(request, recorder, JETTY_SKELETON)
        major = jetty_major or (12 if request.jakarta else 10)

        if config.url_rewrite.enabled and config.enable_lucee:
            recorder.warn(
                "URL rewriting is not supported with the Jetty runtime; "
                "configure Jetty's RewriteHandler manually."
            )
        keystore = self._keystore(request, recorder)
        override = base / "etc" / "lucee-web.xml"
        context = placeholders.context(
            jettyMajor=major,
            jakarta=request.jakarta,
            httpsEnabled=keystore is not None,
            keystorePath=str(keystore.path) if keystore else "",
            keystorePassword=keystore.password if keystore else "",
            overrideDescriptor=str(override),
        )
        recorder.write(
            base / "start.d" / "luceectl.ini",
            self.templates.render_to_string("jetty/luceectl.ini.j2", context),
            mode=0o600 if keystore is not None else 0o644,
            verb="render",
        )
        recorder.write(
            base / "webapps" / "ROOT.xml",
            self.templates.render_to_string("jetty/ROOT.xml.j2", context),
            verb="render",
        )
        recorder.write(
            override,
            self.templates.render_to_string("jetty/lucee-web.xml.j2", context),
            verb="render",
        )
        self._patch_web_xml(request, override, recorder)

        if request.lucee_jar is not None:
            self._install_jar(request.lucee_jar, base / "lib" / "ext", recorder)
        extensions = self._finish(request, recorder)
        return BuildResult(
            instance_dir=base,
            actions=tuple(recorder.actions),
            warnings=tuple(recorder.warnings),
            catalina_opts=tuple(build_catalina_opts(config, request.active_agents)),
            extensions=extensions,
            keystore=keystore,
            dry_run=request.dry_run,
        )

    # ------------------------------------------------------------------
    # Docker
    # ------------------------------------------------------------------
    def build_container(self, request: BuildRequest) -> BuildResult:
        """Create the host-side folders mounted into a Lucee container.

        The image owns its JVM settings, so no options are produced.
        """
        recorder = _Recorder(request.instance_dir, dry_run=request.dry_run)
        self._prepare(request, recorder, ("lucee-server", "logs"))
        extensions = self._finish(request, recorder)
        return BuildResult(
            instance_dir=request.instance_dir,
            actions=tuple(recorder.actions),
            warnings=tuple(recorder.warnings),
            catalina_opts=(),
            extensions=extensions,
            dry_run=request.dry_run,
        )

    # Internal helpers -------------------------------------------------
    def _prepare(
        self,
        request: BuildRequest,
        recorder: _Recorder,
        skeleton: tuple[str, ...],
    ) -> PlaceholderMap:
        base = request.instance_dir
        if request.force_replace:
            recorder.remove_tree(base)
        recorder.mkdir(base)
        for relative in skeleton:
            recorder.mkdir(base / relative)
        return PlaceholderMap.for_instance(
            request.config,
            instance_dir=base,
            project_dir=request.project_dir,
            patches_dir=self.patches_dir,
        )

    def _finish(self, request: BuildRequest, recorder: _Recorder) -> ExtensionPlan:
        base = request.instance_dir
        cfconfig = resolve_configuration(request.config, request.project_dir)
        if cfconfig:
            recorder.write(base / CFCONFIG_PATH, json.dumps(cfconfig, indent=2) + "\n")

        plan = read_lock_file(request.project_dir)
        for warning in plan.warnings:
            recorder.warn(warning)
        for extension in plan.deployable:
            recorder.note(f"deploy extension {extension.name}")
        if not request.dry_run:
            deploy_extensions(plan, base / "lucee-server")
        return plan

    def _copy_text(
        self,
        source: Path,
        destination: Path,
        placeholders: PlaceholderMap,
        recorder: _Recorder,
    ) -> None:
        text = source.read_text(encoding="utf-8")
        recorder.write(destination, placeholders.substitute(text), verb=f"copy {source} ->")

    def _patch_web_xml(self, request: BuildRequest, path: Path, recorder: _Recorder) -> None:
        base = request.instance_dir
        recorder.note(f"patch {recorder.label(path)}")
        if request.dry_run:
            return
        self.web_xml_patcher.patch_file(
            path,
            WebXmlOptions(
                enable_lucee=request.config.enable_lucee,
                enable_rest=request.config.enable_rest,
                lucee_server_dir=base / "lucee-server",
                lucee_web_dir=base / "lucee-web",
                jakarta=request.jakarta,
            ),
        )

    def _keystore(self, request: BuildRequest, recorder: _Recorder) -> KeystoreMaterial | None:
        https = request.config.https
        if not https.enabled:
            return None
        if https.keystore:
            path = Path(https.keystore).expanduser()
            if not path.is_absolute():
                path = request.project_dir / path
            password = https.keystore_password or ""
            if not request.dry_run:
                verify_keystore(path, password)
            recorder.note(f"use keystore {path}")
            return KeystoreMaterial(path=path, password=password, alias=https.key_alias)
        material = ensure_keystore(
            request.instance_dir / "certs",
            host=request.config.effective_host,
            alias=https.key_alias,
            dry_run=request.dry_run,
        )
        if material.generated:
            recorder.note("generate certs/keystore.p12")
        return material

    def _install_jar(self, jar: Path, lib_dir: Path, recorder: _Recorder) -> None:
        target = lib_dir / jar.name
        if lib_dir.is_dir():
            for stale in lib_dir.glob("lucee-*.jar"):
                if stale.name != jar.name:
                    recorder.unlink(stale)
        if target.is_file() and jar.is_file() and target.stat().st_size == jar.stat().st_size:
            return
        recorder.copy(jar, target)


def _crlf(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\n", "\r\n")


def is_executable(path: Path) -> bool:
    """Return whether *path* exists and may be executed."""
    return path.is_file() and os.access(path, os.X_OK)


__all__ = [
    "BuildRequest",
    "BuildResult",
    "CATALINA_SKELETON",
    "InstallationError",
    "InstanceDirectoryBuilder",
    "JETTY_SKELETON",
    "PlaceholderMap",
    "is_executable",
]
