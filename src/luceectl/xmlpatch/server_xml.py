"""Patch a copied Tomcat ``conf/server.xml`` for one instance."""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path

from .document import XmlDocument, XmlPatchError

LOGGER = logging.getLogger(__name__)

HTTP_PROTOCOLS = frozenset({"", "HTTP/1.1", "org.apache.coyote.http11.Http11NioProtocol"})
NIO_PROTOCOL = "org.apache.coyote.http11.Http11NioProtocol"
REWRITE_VALVE = "org.apache.catalina.valves.rewrite.RewriteValve"


@dataclass(frozen=True)
class HttpsConnectorOptions:
    """Certificate and port settings for the HTTPS connector."""

    port: int
    keystore_file: Path
    keystore_password: str
    key_alias: str = "luceectl"


@dataclass(frozen=True)
class ServerXmlOptions:
    """What the patched ``server.xml`` must contain."""

    http_port: int
    shutdown_port: int
    webroot: Path
    https: HttpsConnectorOptions | None = None
    rewrite: bool = False


@dataclass(frozen=True)
class ServerXmlPatchResult:
    """Summary of a patch run."""

    changes: int
    host_name: str


class ServerXmlPatcher:
    """Apply :class:`ServerXmlOptions` to a parsed ``server.xml``."""

    def patch(self, doc: XmlDocument, options: ServerXmlOptions) -> ServerXmlPatchResult:
        """Patch *doc* in place and return the number of changes plus the host name."""
        root = doc.root
        if doc.local(root) != "Server":
            raise XmlPatchError(f"Expected <Server> root element, found <{doc.local(root)}>.")
        changes = doc.set_attribute(root, "port", str(options.shutdown_port))

        service = doc.find("Service")
        if service is None:
            raise XmlPatchError("server.xml has no <Service> element.")

        http = self._http_connector(doc, service)
        if http is None:
            raise XmlPatchError("server.xml has no HTTP/1.1 <Connector> to configure.")
        changes += doc.set_attribute(http, "port", str(options.http_port))

        if options.https is not None:
            changes += doc.set_attribute(http, "redirectPort", str(options.https.port))
            changes += self._ensure_https(doc, service, options.https)
        else:
            for connector in self._https_connectors(doc, service):
                service.remove(connector)
                changes += 1

        host = self._host(doc, service)
        changes += self._ensure_root_context(doc, host, options.webroot)
        changes += self._ensure_rewrite_valve(doc, host, options.rewrite)
        return ServerXmlPatchResult(changes=changes, host_name=host.get("name") or "localhost")

    def patch_file(self, path: Path, options: ServerXmlOptions) -> ServerXmlPatchResult:
        """Parse *path*, patch it and write it back."""
        doc = XmlDocument.parse(path)
        result = self.patch(doc, options)
        doc.save(path)
        LOGGER.debug("Patched %s (%s changes)", path, result.changes)
        return result

    # Internal helpers -------------------------------------------------
    def _http_connector(self, doc: XmlDocument, service: ET.Element) -> ET.Element | None:
        for connector in doc.children(service, "Connector"):
            protocol = connector.get("protocol", "")
            if protocol in HTTP_PROTOCOLS and not _is_https(connector):
                return connector
        return None

    def _https_connectors(self, doc: XmlDocument, service: ET.Element) -> list[ET.Element]:
        return [c for c in doc.children(service, "Connector") if _is_https(c)]

    def _ensure_https(
        self,
        doc: XmlDocument,
        service: ET.Element,
        options: HttpsConnectorOptions,
    ) -> int:
        changes = 0
        existing = self._https_connectors(doc, service)
        if existing:
            connector = existing[0]
        else:
            connectors = doc.children(service, "Connector")
            index = list(service).index(connectors[-1]) + 1 if connectors else None
            connector = doc.append_child(service, "Connector", index=index)
            changes += 1
        for name, value in (
            ("port", str(options.port)),
            ("protocol", NIO_PROTOCOL),
            ("SSLEnabled", "true"),
            ("scheme", "https"),
            ("secure", "true"),
            ("maxThreads", "150"),
        ):
            changes += doc.set_attribute(connector, name, value)

        desired = {
            "certificateKeystoreFile": str(options.keystore_file),
            "certificateKeystorePassword": options.keystore_password,
            "certificateKeystoreType": "PKCS12",
            "certificateKeyAlias": options.key_alias,
            "type": "RSA",
        }
        host_configs = doc.children(connector, "SSLHostConfig")
        current = None
        if len(host_configs) == 1:
            certificates = doc.children(host_configs[0], "Certificate")
            if (
                host_configs[0].get("hostName") == "_default_"
                and host_configs[0].get("protocols") == "TLSv1.2,TLSv1.3"
                and len(certificates) == 1
                and dict(certificates[0].attrib) == desired
            ):
                current = host_configs[0]
        if current is None:
            doc.remove_all(connector, "SSLHostConfig")
            host_config = doc.append_child(
                connector,
                "SSLHostConfig",
                {"hostName": "_default_", "protocols": "TLSv1.2,TLSv1.3"},
            )
            doc.append_child(host_config, "Certificate", desired)
            changes += 1
        return changes

    def _host(self, doc: XmlDocument, service: ET.Element) -> ET.Element:
        engine = doc.find("Engine", service)
        if engine is None:
            raise XmlPatchError("server.xml has no <Engine> element.")
        hosts = doc.children(engine, "Host")
        if not hosts:
            raise XmlPatchError("server.xml has no <Host> element.")
        default_host = engine.get("defaultHost")
        for host in hosts:
            if host.get("name") == default_host:
                return host
        return hosts[0]

    def _ensure_root_context(self, doc: XmlDocument, host: ET.Element, webroot: Path) -> int:
        for context in doc.children(host, "Context"):
            if context.get("path", "") in {"", "/"}:
                return doc.set_attribute(context, "docBase", str(webroot))
        doc.append_child(host, "Context", {"path": "", "docBase": str(webroot)})
        return 1

    def _ensure_rewrite_valve(self, doc: XmlDocument, host: ET.Element, enabled: bool) -> int:
        valves = [v for v in doc.children(host, "Valve") if v.get("className") == REWRITE_VALVE]
        if enabled:
            if valves:
                return 0
            doc.append_child(host, "Valve", {"className": REWRITE_VALVE})
            return 1
        for valve in valves:
            host.remove(valve)
        return len(valves)


def _is_https(connector: ET.Element) -> bool:
    return connector.get("scheme") == "https" or connector.get("SSLEnabled") == "true"


__all__ = [
    "HttpsConnectorOptions",
    "ServerXmlOptions",
    "ServerXmlPatchResult",
    "ServerXmlPatcher",
]
