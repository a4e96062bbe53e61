"""Jinja2 template rendering for generated instance files."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined


class TemplateEngine:
    """Render packaged templates, optionally shadowed by user overrides."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self.environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine whose search path starts with *override_dir* when it exists."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None:
            candidate = Path(override_dir).expanduser()
            if candidate.is_dir():
                loaders.append(FileSystemLoader(str(candidate)))
        loaders.append(PackageLoader("luceectl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        template = self.environment.get_template(template_name)
        return template.render(**dict(context))

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
        newline: str | None = None,
    ) -> bool:
        """Render into *destination*; return ``False`` if the content was unchanged."""
        rendered = self.render_to_string(template_name, context)
        if newline is not None:
            rendered = rendered.replace("\r\n", "\n").replace("\n", newline)
        return write_if_changed(destination, rendered, mode=mode)


def write_if_changed(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Atomically write *content* to *destination* unless it already matches."""
    if destination.exists():
        existing = destination.read_bytes().decode("utf-8", errors="replace")
        if existing == content:
            if (destination.stat().st_mode & 0o777) != mode:
                os.chmod(destination, mode)
            return False

    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        os.replace(tmp_path, destination)
        os.chmod(destination, mode)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "write_if_changed"]
