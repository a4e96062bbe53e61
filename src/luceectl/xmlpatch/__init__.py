"""XML configuration patching for servlet containers."""
from __future__ import annotations

from .document import XmlDocument, XmlPatchError
from .rewrite import RewriteRules, build_rewrite_rules, https_redirect_rules, rewrite_active
from .server_xml import HttpsConnectorOptions, ServerXmlOptions, ServerXmlPatcher, ServerXmlPatchResult
from .web_xml import WebXmlOptions, WebXmlPatcher, servlet_classes

__all__ = [
    "HttpsConnectorOptions",
    "RewriteRules",
    "ServerXmlOptions",
    "ServerXmlPatchResult",
    "ServerXmlPatcher",
    "WebXmlOptions",
    "WebXmlPatcher",
    "XmlDocument",
    "XmlPatchError",
    "build_rewrite_rules",
    "https_redirect_rules",
    "rewrite_active",
    "servlet_classes",
]
