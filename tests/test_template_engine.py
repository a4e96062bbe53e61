"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from luceectl.templates import TemplateEngine, write_if_changed


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("tomcat/setenv.sh.j2", {"catalinaOpts": '-Xmx1g -Da="b c"'})

    assert output.startswith("#!/bin/sh\n")
    assert 'BASE_CATALINA_OPTS="-Xmx1g -Da=\\"b c\\""' in output


def test_missing_variables_fail() -> None:
    """StrictUndefined surfaces template bugs."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("tomcat/setenv.sh.j2", {})


def test_override_directory_shadows_packaged_template(tmp_path: Path) -> None:
    """Templates under <home>/templates win over the packaged ones."""
    override = tmp_path / "templates" / "tomcat"
    override.mkdir(parents=True)
    (override / "setenv.sh.j2").write_text("custom {{ catalinaOpts }}\n")

    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("tomcat/setenv.sh.j2", {"catalinaOpts": "-Xmx2g"}) == (
        "custom -Xmx2g\n"
    )
    assert "RewriteRule" in engine.render_to_string(
        "tomcat/rewrite.config.j2", {"routerFile": "index.cfm"}
    )


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "bin" / "setenv.sh"
    context = {"catalinaOpts": "-Xmx512m"}

    changed = engine.render_to_path("tomcat/setenv.sh.j2", destination, context, mode=0o755)

    assert changed is True
    assert oct(destination.stat().st_mode & 0o777) == "0o755"

    # Second render with same content should be a no-op.
    assert engine.render_to_path("tomcat/setenv.sh.j2", destination, context, mode=0o755) is False


def test_render_to_path_converts_newlines(tmp_path: Path) -> None:
    """Windows scripts are written with CRLF line endings."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "setenv.bat"

    engine.render_to_path(
        "tomcat/setenv.bat.j2", destination, {"catalinaOpts": "-Xmx512m"}, newline="\r\n"
    )

    data = destination.read_bytes()
    assert b"\r\n" in data
    assert b"\n" not in data.replace(b"\r\n", b"")


def test_write_if_changed_fixes_mode_only(tmp_path: Path) -> None:
    """Identical content with a different mode only gets chmod'ed."""
    path = tmp_path / "file.txt"
    path.write_text("same")
    path.chmod(0o600)

    assert write_if_changed(path, "same", mode=0o644) is False
    assert oct(path.stat().st_mode & 0o777) == "0o644"
