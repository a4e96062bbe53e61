"""Tests for the server.xml / web.xml patchers and rewrite rules."""
from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from luceectl.server_config import HttpsConfig, ServerConfig, UrlRewriteConfig
from luceectl.templates import TemplateEngine
from luceectl.xmlpatch import (
    HttpsConnectorOptions,
    ServerXmlOptions,
    ServerXmlPatcher,
    WebXmlOptions,
    WebXmlPatcher,
    XmlDocument,
    XmlPatchError,
    build_rewrite_rules,
    rewrite_active,
)

SERVER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<!-- vendor comment -->
<Server port="8005" shutdown="SHUTDOWN">
  <Service name="Catalina">
    <Connector port="8888" protocol="HTTP/1.1" connectionTimeout="20000" redirectPort="8443"/>
    <Connector port="8443" protocol="org.apache.coyote.http11.Http11NioProtocol" SSLEnabled="true"/>
    <Engine name="Catalina" defaultHost="localhost">
      <Host name="localhost" appBase="webapps">
        <Context path="" docBase="/old/root"/>
      </Host>
    </Engine>
  </Service>
</Server>
"""

WEB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<web-app xmlns="https://jakarta.ee/xml/ns/jakartaee" version="6.0">
  <servlet>
    <servlet-name>default</servlet-name>
    <servlet-class>org.apache.catalina.servlets.DefaultServlet</servlet-class>
  </servlet>
  <servlet>
    <servlet-name>CFMLServlet</servlet-name>
    <servlet-class>lucee.loader.servlet.CFMLServlet</servlet-class>
  </servlet>
  <servlet-mapping>
    <servlet-name>CFMLServlet</servlet-name>
    <url-pattern>*.cfm</url-pattern>
  </servlet-mapping>
</web-app>
"""


def _server_options(tmp_path: Path, **overrides: object) -> ServerXmlOptions:
    options = ServerXmlOptions(http_port=8181, shutdown_port=9181, webroot=tmp_path / "site")
    return replace(options, **overrides)


def _web_options(tmp_path: Path, **overrides: object) -> WebXmlOptions:
    options = WebXmlOptions(
        enable_lucee=True,
        enable_rest=False,
        lucee_server_dir=tmp_path / "lucee-server",
        lucee_web_dir=tmp_path / "lucee-web",
        jakarta=True,
    )
    return replace(options, **overrides)


def test_server_xml_ports_webroot_and_https_removal(tmp_path: Path) -> None:
    doc = XmlDocument.from_string(SERVER_XML)

    result = ServerXmlPatcher().patch(doc, _server_options(tmp_path))
    text = doc.tostring()

    assert result.host_name == "localhost"
    assert '<Server port="9181"' in text
    assert 'port="8181"' in text
    assert "SSLEnabled" not in text
    assert f'docBase="{tmp_path / "site"}"' in text


def test_server_xml_patch_is_idempotent(tmp_path: Path) -> None:
    options = _server_options(
        tmp_path,
        https=HttpsConnectorOptions(
            port=8543,
            keystore_file=tmp_path / "certs" / "keystore.p12",
            keystore_password="secret",
        ),
        rewrite=True,
    )
    first = XmlDocument.from_string(SERVER_XML)
    ServerXmlPatcher().patch(first, options)
    once = first.tostring()

    second = XmlDocument.from_string(once)
    result = ServerXmlPatcher().patch(second, options)

    assert result.changes == 0
    assert second.tostring() == once
    assert once.count("RewriteValve") == 1
    assert 'certificateKeystoreType="PKCS12"' in once
    assert 'redirectPort="8543"' in once


def test_server_xml_requires_http_connector(tmp_path: Path) -> None:
    doc = XmlDocument.from_string('<Server port="8005"><Service name="x"/></Server>')

    with pytest.raises(XmlPatchError, match="HTTP/1.1"):
        ServerXmlPatcher().patch(doc, _server_options(tmp_path))


def test_unparseable_xml_is_reported() -> None:
    with pytest.raises(XmlPatchError, match="Failed to parse XML"):
        XmlDocument.from_string("<Server><Service></Server>")


def test_web_xml_replaces_lucee_servlets_and_keeps_namespace(tmp_path: Path) -> None:
    doc = XmlDocument.from_string(WEB_XML)

    WebXmlPatcher().patch(doc, _web_options(tmp_path, enable_rest=True))
    text = doc.tostring()

    assert "ns0:" not in text
    assert '<web-app xmlns="https://jakarta.ee/xml/ns/jakartaee"' in text
    assert text.count("<servlet-name>CFMLServlet</servlet-name>") == 6
    assert "lucee.loader.servlet.jakarta.CFMLServlet" in text
    assert "lucee.loader.servlet.jakarta.RestServlet" in text
    assert "<url-pattern>/rest/*</url-pattern>" in text
    assert "<url-pattern>/lucee.json</url-pattern>" in text
    assert "<welcome-file>index.cfm</welcome-file>" in text
    assert "DefaultServlet" in text


def test_web_xml_patch_is_idempotent(tmp_path: Path) -> None:
    options = _web_options(tmp_path)
    first = XmlDocument.from_string(WEB_XML)
    WebXmlPatcher().patch(first, options)
    once = first.tostring()

    second = XmlDocument.from_string(once)
    WebXmlPatcher().patch(second, options)

    assert second.tostring() == once


def test_web_xml_without_lucee_keeps_protection_only(tmp_path: Path) -> None:
    doc = XmlDocument.from_string(WEB_XML)

    WebXmlPatcher().patch(doc, _web_options(tmp_path, enable_lucee=False, jakarta=False))
    text = doc.tostring()

    assert "CFMLServlet" not in text
    assert "/lucee.json" in text


def test_rewrite_rules_default_and_custom(tmp_path: Path) -> None:
    templates = TemplateEngine.with_overrides(None)
    config = ServerConfig(name="app")

    default = build_rewrite_rules(config, tmp_path, templates)
    assert default.source == "default"
    assert "RewriteRule ^/(.*)$ /index.cfm/$1 [L]" in default.content

    (tmp_path / "rewrite.config").write_text("RewriteRule ^/custom$ /x.cfm [L]\n")
    (tmp_path / "urlrewrite.xml").write_text("<urlrewrite/>")
    custom = build_rewrite_rules(config, tmp_path, templates)
    assert custom.content == "RewriteRule ^/custom$ /x.cfm [L]\n"
    assert "legacy urlrewrite.xml" in custom.warnings[0]


def test_https_redirect_rules_come_first(tmp_path: Path) -> None:
    templates = TemplateEngine.with_overrides(None)
    config = ServerConfig(
        name="app",
        https=HttpsConfig(enabled=True, port=8443),
        url_rewrite=UrlRewriteConfig(enabled=False),
    )

    rules = build_rewrite_rules(config, tmp_path, templates)

    assert rewrite_active(config)
    assert rules.source == "https-redirect"
    assert rules.content.startswith("RewriteCond %{HTTPS} !=on\n")
    assert "https://localhost:8443/$1 [R=302,L]" in rules.content


def test_rewrite_inactive_without_lucee() -> None:
    config = ServerConfig(name="app", enable_lucee=False)

    assert not rewrite_active(config)
