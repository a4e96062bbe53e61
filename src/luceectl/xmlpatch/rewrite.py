"""Assemble the Tomcat ``RewriteValve`` rules file for an instance."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..server_config import ServerConfig
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "tomcat/rewrite.config.j2"
LEGACY_RULES_FILE = "urlrewrite.xml"


@dataclass(frozen=True)
class RewriteRules:
    """Rendered rules plus anything worth telling the user."""

    content: str
    source: str
    warnings: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        """Return whether no rule was produced."""
        return not self.content.strip()


def rewrite_active(config: ServerConfig) -> bool:
    """Return whether the instance needs a rewrite valve at all."""
    return (config.url_rewrite.enabled and config.enable_lucee) or config.https_redirect_enabled


def https_redirect_rules(host: str, https_port: int) -> str:
    """Return the rules that send plain HTTP requests to the HTTPS connector."""
    return (
        "RewriteCond %{HTTPS} !=on\n"
        f"RewriteRule ^/(.*)$ https://{host}:{https_port}/$1 [R=302,L]\n"
        "\n"
    )


def build_rewrite_rules(
    config: ServerConfig,
    project_dir: Path,
    templates: TemplateEngine,
) -> RewriteRules:
    """Return the rules for *config*.

    HTTPS redirect rules come first, then the project's own rules file
    (``urlRewrite.configFile``) when it exists, else the bundled router
    rules. Only the redirect rules are emitted when URL rewriting is off.
    """
    warnings: list[str] = []
    parts: list[str] = []
    source = "none"

    if config.https_redirect_enabled:
        parts.append(https_redirect_rules(config.effective_host, config.effective_https_port))
        source = "https-redirect"

    if config.url_rewrite.enabled and config.enable_lucee:
        legacy = project_dir / LEGACY_RULES_FILE
        if legacy.exists():
            warnings.append(
                f"Found legacy {LEGACY_RULES_FILE} in {project_dir}; it is ignored. "
                f"Move the rules to {config.url_rewrite.config_file} (mod_rewrite syntax)."
            )
        custom = Path(config.url_rewrite.config_file).expanduser()
        if not custom.is_absolute():
            custom = project_dir / custom
        if custom.is_file():
            parts.append(custom.read_text(encoding="utf-8"))
            source = str(custom)
        else:
            parts.append(
                templates.render_to_string(
                    DEFAULT_TEMPLATE,
                    {"routerFile": config.url_rewrite.router_file.lstrip("/")},
                )
            )
            source = "default"

    for warning in warnings:
        LOGGER.warning(warning)
    return RewriteRules(content="".join(parts), source=source, warnings=tuple(warnings))


__all__ = [
    "RewriteRules",
    "build_rewrite_rules",
    "https_redirect_rules",
    "rewrite_active",
]
