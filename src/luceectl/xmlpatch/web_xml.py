"""Ensure the Lucee servlets and mappings in a servlet ``web.xml`` descriptor.

Lucee's elements are always removed and re-appended at the end of
``<web-app>``; the protective security constraint is added once and kept
ahead of them. Applying the patch twice therefore produces identical output.
"""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path

from .document import XmlDocument, XmlPatchError

LOGGER = logging.getLogger(__name__)

CFML_SERVLET_NAME = "CFMLServlet"
REST_SERVLET_NAME = "RESTServlet"
CFML_PATTERNS = ("*.cfm", "*.cfml", "*.cfc", "/index.cfm/*", "/index.cfc/*")
REST_PATTERNS = ("/rest/*",)
PROTECTED_RESOURCE = "luceectl configuration"
PROTECTED_PATTERN = "/lucee.json"
WELCOME_FILE = "index.cfm"


def servlet_classes(jakarta: bool) -> tuple[str, str]:
    """Return the ``(CFML, REST)`` servlet classes for a servlet generation."""
    package = "lucee.loader.servlet.jakarta" if jakarta else "lucee.loader.servlet"
    return f"{package}.CFMLServlet", f"{package}.RestServlet"


@dataclass(frozen=True)
class WebXmlOptions:
    """What the patched descriptor must contain."""

    enable_lucee: bool
    enable_rest: bool
    lucee_server_dir: Path
    lucee_web_dir: Path
    jakarta: bool = False


class WebXmlPatcher:
    """Apply :class:`WebXmlOptions` to a parsed ``web.xml``."""

    def patch(self, doc: XmlDocument, options: WebXmlOptions) -> None:
        """Patch *doc* in place."""
        root = doc.root
        if doc.local(root) != "web-app":
            raise XmlPatchError(f"Expected <web-app> root element, found <{doc.local(root)}>.")

        self._remove_lucee(doc, root)
        self._ensure_security_constraint(doc, root)
        if not options.enable_lucee:
            return
        self._ensure_welcome_file(doc, root)

        cfml_class, rest_class = servlet_classes(options.jakarta)
        servlet = doc.append_child(root, "servlet")
        doc.append_child(servlet, "servlet-name", text=CFML_SERVLET_NAME)
        doc.append_child(servlet, "servlet-class", text=cfml_class)
        self._init_param(doc, servlet, "lucee-server-directory", str(options.lucee_server_dir))
        self._init_param(doc, servlet, "lucee-web-directory", str(options.lucee_web_dir))
        doc.append_child(servlet, "load-on-startup", text="1")

        if options.enable_rest:
            rest = doc.append_child(root, "servlet")
            doc.append_child(rest, "servlet-name", text=REST_SERVLET_NAME)
            doc.append_child(rest, "servlet-class", text=rest_class)
            doc.append_child(rest, "load-on-startup", text="2")

        for pattern in CFML_PATTERNS:
            self._mapping(doc, root, CFML_SERVLET_NAME, pattern)
        if options.enable_rest:
            for pattern in REST_PATTERNS:
                self._mapping(doc, root, REST_SERVLET_NAME, pattern)

    def patch_file(self, path: Path, options: WebXmlOptions) -> None:
        """Parse *path*, patch it and write it back."""
        doc = XmlDocument.parse(path)
        self.patch(doc, options)
        doc.save(path)
        LOGGER.debug("Patched %s (lucee=%s, rest=%s)", path, options.enable_lucee, options.enable_rest)

    # Internal helpers -------------------------------------------------
    def _remove_lucee(self, doc: XmlDocument, root: ET.Element) -> None:
        servlet_names: set[str] = set()
        for servlet in doc.children(root, "servlet"):
            servlet_class = doc.child_text(servlet, "servlet-class") or ""
            name = doc.child_text(servlet, "servlet-name") or ""
            if servlet_class.startswith("lucee.") or name in {CFML_SERVLET_NAME, REST_SERVLET_NAME}:
                servlet_names.add(name)
                root.remove(servlet)
        for mapping in doc.children(root, "servlet-mapping"):
            if doc.child_text(mapping, "servlet-name") in servlet_names:
                root.remove(mapping)

        filter_names: set[str] = set()
        for filter_element in doc.children(root, "filter"):
            if (doc.child_text(filter_element, "filter-class") or "").startswith("lucee."):
                filter_names.add(doc.child_text(filter_element, "filter-name") or "")
                root.remove(filter_element)
        for mapping in doc.children(root, "filter-mapping"):
            if doc.child_text(mapping, "filter-name") in filter_names:
                root.remove(mapping)

    def _ensure_security_constraint(self, doc: XmlDocument, root: ET.Element) -> None:
        for constraint in doc.children(root, "security-constraint"):
            for collection in doc.children(constraint, "web-resource-collection"):
                if doc.child_text(collection, "web-resource-name") == PROTECTED_RESOURCE:
                    return
        constraint = doc.append_child(root, "security-constraint")
        collection = doc.append_child(constraint, "web-resource-collection")
        doc.append_child(collection, "web-resource-name", text=PROTECTED_RESOURCE)
        doc.append_child(collection, "url-pattern", text=PROTECTED_PATTERN)
        doc.append_child(constraint, "auth-constraint")

    def _ensure_welcome_file(self, doc: XmlDocument, root: ET.Element) -> None:
        welcome = doc.ensure_child(root, "welcome-file-list")
        for entry in doc.children(welcome, "welcome-file"):
            if (entry.text or "").strip() == WELCOME_FILE:
                return
        doc.append_child(welcome, "welcome-file", text=WELCOME_FILE, index=0)

    def _init_param(self, doc: XmlDocument, servlet: ET.Element, name: str, value: str) -> None:
        param = doc.append_child(servlet, "init-param")
        doc.append_child(param, "param-name", text=name)
        doc.append_child(param, "param-value", text=value)

    def _mapping(self, doc: XmlDocument, root: ET.Element, servlet: str, pattern: str) -> None:
        mapping = doc.append_child(root, "servlet-mapping")
        doc.append_child(mapping, "servlet-name", text=servlet)
        doc.append_child(mapping, "url-pattern", text=pattern)


__all__ = ["WebXmlOptions", "WebXmlPatcher", "servlet_classes"]
