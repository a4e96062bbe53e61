"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path

import pytest

SERVER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<Server port="8005" shutdown="SHUTDOWN">
  <Listener className="org.apache.catalina.startup.VersionLoggerListener" />
  <Service name="Catalina">
    <Connector port="8888" protocol="HTTP/1.1" connectionTimeout="20000" redirectPort="8443" />
    <Engine name="Catalina" defaultHost="localhost">
      <Host name="localhost" appBase="webapps" unpackWARs="true" autoDeploy="true">
        <Context path="" docBase="${webroot}" />
      </Host>
    </Engine>
  </Service>
</Server>
"""

WEB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<web-app xmlns="http://xmlns.jcp.org/xml/ns/javaee" version="4.0">
  <servlet>
    <servlet-name>default</servlet-name>
    <servlet-class>org.apache.catalina.servlets.DefaultServlet</servlet-class>
    <load-on-startup>1</load-on-startup>
  </servlet>
</web-app>
"""


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def make_catalina_home(root: Path, *, version: str = "9.0.98") -> Path:
    """Create a minimal Tomcat layout with an executable ``catalina.sh``."""
    (root / "bin").mkdir(parents=True, exist_ok=True)
    (root / "lib").mkdir(exist_ok=True)
    (root / "conf").mkdir(exist_ok=True)
    script = root / "bin" / "catalina.sh"
    script.write_text(f'#!/bin/sh\necho "Server number:  {version}.0"\n')
    script.chmod(0o755)
    (root / "conf" / "server.xml").write_text(SERVER_XML)
    (root / "conf" / "web.xml").write_text(WEB_XML)
    (root / "RELEASE-NOTES").write_text(f"Apache Tomcat Version {version}\n")
    return root


@pytest.fixture
def catalina_home(tmp_path: Path) -> Path:
    """Return a fake Tomcat 9 installation."""
    return make_catalina_home(tmp_path / "tomcat")


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Return a project with a small ``lucee.json`` and an index page."""
    project = tmp_path / "myapp"
    project.mkdir()
    (project / "index.cfm").write_text("<cfoutput>hi</cfoutput>\n")
    (project / "lucee.json").write_text(
        json.dumps({"name": "myapp", "port": 8181, "openBrowser": False}, indent=2)
    )
    return project


@pytest.fixture
def catalina_factory() -> Callable[..., Path]:
    """Return :func:`make_catalina_home` for tests that need extra installations."""
    return make_catalina_home
