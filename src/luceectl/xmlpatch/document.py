"""Small ElementTree wrapper used by the server.xml and web.xml patchers.

Comments survive a parse/serialise round trip, the document's default
namespace is written back without ``ns0:`` prefixes, and serialisation is
deterministic (re-indented with two spaces) so patching an already patched
file yields byte-identical output.
"""
from __future__ import annotations

import xml.etree.ElementTree as ET
from collections.abc import Iterator, Mapping
from pathlib import Path

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'


class XmlPatchError(RuntimeError):
    """Raised when an XML configuration file cannot be read or patched."""


class XmlDocument:
    """A parsed XML file plus namespace-aware helpers."""

    def __init__(self, root: ET.Element, *, source: Path | None = None) -> None:
        """Wrap *root*; *source* is remembered for error messages and saving."""
        self.root = root
        self.source = source
        self.namespace = _namespace_of(root.tag)
        if self.namespace:
            ET.register_namespace("", self.namespace)

    # Construction ----------------------------------------------------
    @classmethod
    def from_string(cls, text: str, *, source: Path | None = None) -> XmlDocument:
        """Parse *text*, keeping comments."""
        parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True))
        try:
            parser.feed(text)
            root = parser.close()
        except ET.ParseError as exc:
            where = f" {source}" if source else ""
            raise XmlPatchError(f"Failed to parse XML{where}: {exc}") from exc
        return cls(root, source=source)

    @classmethod
    def parse(cls, path: Path) -> XmlDocument:
        """Read and parse *path*."""
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise XmlPatchError(f"XML file not found: {path}") from exc
        return cls.from_string(text, source=path)

    # Names -------------------------------------------------------------
    def q(self, tag: str) -> str:
        """Return *tag* qualified with the document's default namespace."""
        if self.namespace and not tag.startswith("{"):
            return f"{{{self.namespace}}}{tag}"
        return tag

    def local(self, element: ET.Element) -> str:
        """Return the tag of *element* without its namespace."""
        tag = element.tag
        if not isinstance(tag, str):
            return ""
        return tag.rsplit("}", 1)[-1]

    # Queries -----------------------------------------------------------
    def children(self, parent: ET.Element, tag: str) -> list[ET.Element]:
        """Return the direct children of *parent* named *tag*."""
        qualified = self.q(tag)
        return [child for child in parent if child.tag == qualified]

    def find_all(self, tag: str, parent: ET.Element | None = None) -> Iterator[ET.Element]:
        """Yield every descendant of *parent* (default: root) named *tag*."""
        scope = self.root if parent is None else parent
        yield from scope.iter(self.q(tag))

    def find(self, tag: str, parent: ET.Element | None = None) -> ET.Element | None:
        """Return the first descendant named *tag*, if any."""
        return next(self.find_all(tag, parent), None)

    def exists(self, tag: str, parent: ET.Element | None = None) -> bool:
        """Return whether any descendant named *tag* exists."""
        return self.find(tag, parent) is not None

    def child_text(self, parent: ET.Element, tag: str) -> str | None:
        """Return the stripped text of the first child *tag* of *parent*."""
        for child in self.children(parent, tag):
            return (child.text or "").strip()
        return None

    # Mutation ----------------------------------------------------------
    def set_attribute(self, element: ET.Element, name: str, value: str) -> int:
        """Set an attribute; return ``1`` if it changed, else ``0``."""
        if element.get(name) == value:
            return 0
        element.set(name, value)
        return 1

    def remove(self, parent: ET.Element, element: ET.Element) -> None:
        """Remove *element* from *parent*."""
        parent.remove(element)

    def remove_all(self, parent: ET.Element, tag: str) -> int:
        """Remove every direct child of *parent* named *tag*; return the count."""
        doomed = self.children(parent, tag)
        for element in doomed:
            parent.remove(element)
        return len(doomed)

    def append_child(
        self,
        parent: ET.Element,
        tag: str,
        attributes: Mapping[str, str] | None = None,
        *,
        text: str | None = None,
        index: int | None = None,
    ) -> ET.Element:
        """Create a child element, appending it or inserting it at *index*."""
        element = ET.Element(self.q(tag), dict(attributes or {}))
        if text is not None:
            element.text = text
        if index is None:
            parent.append(element)
        else:
            parent.insert(index, element)
        return element

    def ensure_child(self, parent: ET.Element, tag: str) -> ET.Element:
        """Return the first child named *tag*, creating it when missing."""
        existing = self.children(parent, tag)
        if existing:
            return existing[0]
        return self.append_child(parent, tag)

    # Output ------------------------------------------------------------
    def tostring(self) -> str:
        """Serialise the document deterministically."""
        if self.namespace:
            ET.register_namespace("", self.namespace)
        ET.indent(self.root, space="  ")
        body = ET.tostring(self.root, encoding="unicode")
        return XML_DECLARATION + body + "\n"

    def save(self, path: Path | None = None) -> Path:
        """Write the document to *path* (default: its source)."""
        target = path or self.source
        if target is None:
            raise XmlPatchError("No destination given for XML document.")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.tostring(), encoding="utf-8")
        return target


def _namespace_of(tag: object) -> str | None:
    if isinstance(tag, str) and tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return None


__all__ = ["XmlDocument", "XmlPatchError"]
