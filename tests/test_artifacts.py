"""Tests for the Lucee Express and jar download cache."""
from __future__ import annotations

import io
import os
import zipfile
from pathlib import Path

import pytest

from luceectl.artifacts import ArtifactCache, ArtifactError, jar_file_name


def _express_zip(prefix: str = "lucee-express/") -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        bundle.writestr(f"{prefix}bin/catalina.sh", "#!/bin/sh\n")
        bundle.writestr(f"{prefix}lib/catalina.jar", "jar")
        bundle.writestr(f"{prefix}conf/server.xml", "<Server/>")
    return buffer.getvalue()


def _cache(tmp_path: Path) -> ArtifactCache:
    return ArtifactCache(
        express_root=tmp_path / "express",
        jars_root=tmp_path / "jars",
        express_url="https://cdn.example/lucee-express-{version}.zip",
        jar_url="https://cdn.example/lucee-{version}.jar",
    )


def _fake_download(payload: bytes, calls: list[str]):
    def _download(self: ArtifactCache, url: str, destination: Path) -> str:
        calls.append(url)
        destination.write_bytes(payload)
        return "digest"

    return _download


def test_jar_file_name_variants() -> None:
    assert jar_file_name("6.2.2.91") == "lucee-6.2.2.91.jar"
    assert jar_file_name("6.2.2.91", "light") == "lucee-light-6.2.2.91.jar"


def test_ensure_express_downloads_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(ArtifactCache, "_download", _fake_download(_express_zip(), calls))
    cache = _cache(tmp_path)

    first = cache.ensure_express("6.2.2.91")
    second = cache.ensure_express("6.2.2.91")

    assert first.downloaded is True
    assert second.downloaded is False
    assert calls == ["https://cdn.example/lucee-express-6.2.2.91.zip"]
    script = first.path / "bin" / "catalina.sh"
    assert script.is_file()
    assert os.access(script, os.X_OK)
    assert not any(entry.name.startswith(".express-") for entry in (tmp_path / "express").iterdir())


def test_ensure_express_dry_run_does_not_download(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[str] = []
    monkeypatch.setattr(ArtifactCache, "_download", _fake_download(b"", calls))

    result = _cache(tmp_path).ensure_express("6.2.2.91", dry_run=True)

    assert result.downloaded is True
    assert calls == []
    assert not result.path.exists()


def test_ensure_express_rejects_foreign_archive(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        bundle.writestr("README.txt", "nothing here")
    monkeypatch.setattr(ArtifactCache, "_download", _fake_download(buffer.getvalue(), []))

    with pytest.raises(ArtifactError, match="not a Lucee Express bundle"):
        _cache(tmp_path).ensure_express("6.2.2.91")


def test_ensure_express_rejects_path_traversal(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        bundle.writestr("../escape.txt", "x")
    monkeypatch.setattr(ArtifactCache, "_download", _fake_download(buffer.getvalue(), []))

    with pytest.raises(ArtifactError, match="outside"):
        _cache(tmp_path).ensure_express("6.2.2.91")


def test_ensure_jar_validates_archive(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(ArtifactCache, "_download", _fake_download(b"<html>404</html>", calls))

    with pytest.raises(ArtifactError, match="not a jar archive"):
        _cache(tmp_path).ensure_jar("6.2.2.91")
    assert list((tmp_path / "jars").iterdir()) == []


def test_ensure_jar_variant_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(ArtifactCache, "_download", _fake_download(_express_zip(""), calls))

    result = _cache(tmp_path).ensure_jar("6.2.2.91", "light")

    assert calls == ["https://cdn.example/lucee-light-6.2.2.91.jar"]
    assert result.path == tmp_path / "jars" / "lucee-light-6.2.2.91.jar"
    assert _cache(tmp_path).ensure_jar("6.2.2.91", "light").downloaded is False


def test_empty_version_rejected(tmp_path: Path) -> None:
    with pytest.raises(ArtifactError, match="non-empty"):
        _cache(tmp_path).ensure_jar("  ")
