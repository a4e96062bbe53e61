"""Tests for instance directory generation."""
from __future__ import annotations

import json
import os
from dataclasses import replace
from pathlib import Path

import pytest

from luceectl.instance_dir import (
    BuildRequest,
    InstallationError,
    InstanceDirectoryBuilder,
    PlaceholderMap,
)
from luceectl.server_config import ServerConfig, UrlRewriteConfig, load_server_config
from luceectl.templates import TemplateEngine


def _builder(tmp_path: Path) -> InstanceDirectoryBuilder:
    return InstanceDirectoryBuilder(
        templates=TemplateEngine.with_overrides(None),
        patches_dir=tmp_path / "patches",
    )


def _request(
    project_dir: Path,
    instance_dir: Path,
    catalina_home: Path | None,
    **overrides: object,
) -> BuildRequest:
    config = load_server_config(project_dir, env={})
    request = BuildRequest(
        config=config,
        project_dir=project_dir,
        instance_dir=instance_dir,
        vendor_home=catalina_home,
    )
    return replace(request, **overrides)


def test_placeholder_map_leaves_unknown_keys() -> None:
    placeholders = PlaceholderMap(values={"httpPort": "8181"})

    assert placeholders.substitute("${httpPort} ${catalina.base} ${other}") == (
        "8181 ${catalina.base} ${other}"
    )


def test_build_catalina_base(tmp_path: Path, project_dir: Path, catalina_home: Path) -> None:
    instance = tmp_path / "servers" / "myapp"
    jar = tmp_path / "jars" / "lucee-6.2.2.91.jar"
    jar.parent.mkdir()
    jar.write_bytes(b"PK")

    result = _builder(tmp_path).build(
        _request(project_dir, instance, catalina_home, lucee_jar=jar, active_agents=())
    )

    for folder in ("conf", "logs", "temp", "work", "webapps", "lucee-server", "lucee-web", "bin"):
        assert (instance / folder).is_dir()
    server_xml = (instance / "conf" / "server.xml").read_text()
    assert '<Server port="9181"' in server_xml
    assert 'port="8181"' in server_xml
    assert f'docBase="{project_dir.resolve()}"' in server_xml
    assert "RewriteValve" in server_xml
    assert (catalina_home / "conf" / "server.xml").read_text().count("8888") == 1

    web_xml = (instance / "conf" / "web.xml").read_text()
    assert "lucee.loader.servlet.CFMLServlet" in web_xml
    assert str(instance / "lucee-server") in web_xml

    setenv = instance / "bin" / "setenv.sh"
    assert os.access(setenv, os.X_OK)
    assert "-Dcom.sun.management.jmxremote.port=8999" in setenv.read_text()
    assert b"\r\n" in (instance / "bin" / "setenv.bat").read_bytes()
    assert (instance / "conf" / "Catalina" / "localhost" / "rewrite.config").is_file()
    assert (instance / "lib" / jar.name).read_bytes() == b"PK"
    assert result.host_name == "localhost"
    assert "render bin/setenv.sh" in result.actions


def test_rebuild_is_idempotent(tmp_path: Path, project_dir: Path, catalina_home: Path) -> None:
    instance = tmp_path / "servers" / "myapp"
    builder = _builder(tmp_path)
    builder.build(_request(project_dir, instance, catalina_home))
    first = (instance / "conf" / "server.xml").read_text()

    builder.build(_request(project_dir, instance, catalina_home))

    assert (instance / "conf" / "server.xml").read_text() == first


def test_dry_run_touches_nothing(tmp_path: Path, project_dir: Path, catalina_home: Path) -> None:
    instance = tmp_path / "servers" / "myapp"

    result = _builder(tmp_path).build(_request(project_dir, instance, catalina_home, dry_run=True))

    assert not instance.exists()
    assert result.dry_run is True
    assert "create ./" in result.actions
    assert "patch conf/server.xml" in result.actions
    assert "render bin/setenv.sh" in result.actions


def test_force_replace_wipes_previous_instance(
    tmp_path: Path, project_dir: Path, catalina_home: Path
) -> None:
    instance = tmp_path / "servers" / "myapp"
    builder = _builder(tmp_path)
    builder.build(_request(project_dir, instance, catalina_home))
    stale = instance / "work" / "stale.txt"
    stale.write_text("x")

    builder.build(_request(project_dir, instance, catalina_home, force_replace=True))

    assert not stale.exists()
    assert (instance / "conf" / "server.xml").is_file()


def test_disabled_rewrite_removes_rules(tmp_path: Path, project_dir: Path, catalina_home: Path) -> None:
    instance = tmp_path / "servers" / "myapp"
    builder = _builder(tmp_path)
    builder.build(_request(project_dir, instance, catalina_home))
    request = _request(project_dir, instance, catalina_home)
    config = replace(request.config, url_rewrite=UrlRewriteConfig(enabled=False))

    builder.build(replace(request, config=config))

    assert not (instance / "conf" / "Catalina" / "localhost" / "rewrite.config").exists()
    assert "RewriteValve" not in (instance / "conf" / "server.xml").read_text()


def test_cfconfig_and_extensions(tmp_path: Path, project_dir: Path, catalina_home: Path) -> None:
    lex = tmp_path / "redis.lex"
    lex.write_bytes(b"lex")
    (project_dir / "lucee-lock.json").write_text(
        json.dumps(
            {"dependencies": {"redis": {"type": "extension", "id": "ABC", "source": f"path:{lex}"}}}
        )
    )
    (project_dir / "lucee.json").write_text(
        json.dumps({"name": "myapp", "configuration": {"inspectTemplate": "never"}})
    )
    instance = tmp_path / "servers" / "myapp"

    result = _builder(tmp_path).build(_request(project_dir, instance, catalina_home))

    cfconfig = instance / "lucee-server" / "context" / ".CFConfig.json"
    assert json.loads(cfconfig.read_text()) == {"inspectTemplate": "never"}
    assert (instance / "lucee-server" / "deploy" / "redis.lex").is_file()
    assert result.extensions.env_value == "ABC"


def test_missing_vendor_server_xml(tmp_path: Path, project_dir: Path) -> None:
    empty = tmp_path / "empty"
    (empty / "conf").mkdir(parents=True)

    with pytest.raises(InstallationError, match="server.xml"):
        _builder(tmp_path).build(_request(project_dir, tmp_path / "i", empty))
    with pytest.raises(InstallationError):
        _builder(tmp_path).build(_request(project_dir, tmp_path / "i", None))


def test_build_jetty_base(tmp_path: Path, project_dir: Path) -> None:
    instance = tmp_path / "servers" / "myapp"
    request = _request(project_dir, instance, None, jakarta=True)

    result = _builder(tmp_path).build_jetty(request, jetty_major=12)

    ini = (instance / "start.d" / "luceectl.ini").read_text()
    assert "ee10-deploy" in ini
    assert "jetty.http.port=8181" in ini
    root_xml = (instance / "webapps" / "ROOT.xml").read_text()
    assert "org.eclipse.jetty.ee10.webapp.WebAppContext" in root_xml
    override = (instance / "etc" / "lucee-web.xml").read_text()
    assert "lucee.loader.servlet.jakarta.CFMLServlet" in override
    assert any("URL rewriting is not supported" in warning for warning in result.warnings)


def test_build_container_only_creates_mounts(tmp_path: Path) -> None:
    project = tmp_path / "app"
    project.mkdir()
    instance = tmp_path / "servers" / "app"
    request = BuildRequest(
        config=ServerConfig(name="app"),
        project_dir=project,
        instance_dir=instance,
    )

    result = _builder(tmp_path).build_container(request)

    assert sorted(entry.name for entry in instance.iterdir()) == ["logs", "lucee-server"]
    assert result.catalina_opts == ()
