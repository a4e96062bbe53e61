"""Download cache for Lucee Express bundles and Lucee jars."""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
import tempfile
import urllib.error
import urllib.request
import zipfile
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

EXPRESS_REQUIRED = ("bin/catalina.sh", "lib", "conf/server.xml")
_CHUNK = 1024 * 64


class ArtifactError(RuntimeError):
    """Raised when an engine artifact cannot be downloaded or unpacked."""


@dataclass(frozen=True, slots=True)
class ArtifactResult:
    """Location of a cached artifact and whether this call fetched it."""

    version: str
    path: Path
    downloaded: bool
    source: str
    sha256: str | None = None


def jar_file_name(version: str, variant: str = "standard") -> str:
    """Return the file name of the Lucee jar for *version* and *variant*."""
    if variant in ("", "standard"):
        return f"lucee-{version}.jar"
    return f"lucee-{variant}-{version}.jar"


class ArtifactCache:
    """Fetch engine artifacts into the luceectl home on first use."""

    def __init__(
        self,
        *,
        express_root: Path,
        jars_root: Path,
        express_url: str,
        jar_url: str,
        timeout: float = 120.0,
    ) -> None:
        """Initialise the cache with target directories and URL templates."""
        self.express_root = express_root.expanduser()
        self.jars_root = jars_root.expanduser()
        self.express_url = express_url
        self.jar_url = jar_url
        self.timeout = timeout

    # ------------------------------------------------------------------
    def express_dir(self, version: str) -> Path:
        """Return where Lucee Express *version* is (or will be) unpacked."""
        return self.express_root / version

    def jar_path(self, version: str, variant: str = "standard") -> Path:
        """Return the cached jar path for *version*."""
        return self.jars_root / jar_file_name(version, variant)

    def ensure_express(self, version: str, *, dry_run: bool = False) -> ArtifactResult:
        """Return the unpacked Lucee Express *version*, downloading it if needed."""
        normalized = version.strip()
        if not normalized:
            raise ArtifactError("Lucee version must be a non-empty string.")
        target = self.express_dir(normalized)
        url = self.express_url.format(version=normalized)
        if _is_express_home(target):
            return ArtifactResult(normalized, target, downloaded=False, source=url)
        if dry_run:
            return ArtifactResult(normalized, target, downloaded=True, source=url)

        self.express_root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".express-{normalized}-", dir=str(self.express_root)))
        try:
            archive = staging / "express.zip"
            digest = self._download(url, archive)
            unpacked = staging / "unpacked"
            _extract_zip(archive, unpacked)
            home = _locate_express_home(unpacked)
            if home is None:
                raise ArtifactError(
                    f"Downloaded archive from {url} is not a Lucee Express bundle "
                    "(bin/catalina.sh missing)."
                )
            _make_scripts_executable(home / "bin")
            if target.exists():
                shutil.rmtree(target)
            shutil.move(str(home), str(target))
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        LOGGER.info("Installed Lucee Express %s into %s", normalized, target)
        return ArtifactResult(normalized, target, downloaded=True, source=url, sha256=digest)

    def ensure_jar(
        self,
        version: str,
        variant: str = "standard",
        *,
        dry_run: bool = False,
    ) -> ArtifactResult:
        """Return the cached Lucee jar for *version*, downloading it if needed."""
        normalized = version.strip()
        if not normalized:
            raise ArtifactError("Lucee version must be a non-empty string.")
        target = self.jar_path(normalized, variant)
        url = self.jar_url.format(version=normalized)
        if variant not in ("", "standard"):
            url = f"{url.rsplit('/', 1)[0]}/{target.name}"
        if target.is_file() and target.stat().st_size > 0:
            return ArtifactResult(normalized, target, downloaded=False, source=url)
        if dry_run:
            return ArtifactResult(normalized, target, downloaded=True, source=url)

        self.jars_root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(self.jars_root))
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            digest = self._download(url, tmp_path)
            if not zipfile.is_zipfile(tmp_path):
                raise ArtifactError(f"Downloaded file from {url} is not a jar archive.")
            os.replace(tmp_path, target)
        finally:
            tmp_path.unlink(missing_ok=True)
        LOGGER.info("Cached %s", target)
        return ArtifactResult(normalized, target, downloaded=True, source=url, sha256=digest)

    # ------------------------------------------------------------------
    def _download(self, url: str, destination: Path) -> str:
        """Stream *url* into *destination* and return its SHA-256 (isolated for testing)."""
        LOGGER.info("Downloading %s", url)
        digest = hashlib.sha256()
        request = urllib.request.Request(url, headers={"User-Agent": "luceectl"})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:  # noqa: S310
                with destination.open("wb") as handle:
                    while True:
                        chunk = response.read(_CHUNK)
                        if not chunk:
                            break
                        digest.update(chunk)
                        handle.write(chunk)
        except urllib.error.HTTPError as exc:
            raise ArtifactError(f"Download of {url} failed: HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise ArtifactError(f"Download of {url} failed: {exc}") from exc
        return digest.hexdigest()


def _is_express_home(path: Path) -> bool:
    return all((path / relative).exists() for relative in EXPRESS_REQUIRED)


def _locate_express_home(unpacked: Path) -> Path | None:
    if (unpacked / "bin" / "catalina.sh").exists():
        return unpacked
    entries = [entry for entry in unpacked.iterdir() if entry.is_dir()]
    if len(entries) == 1 and (entries[0] / "bin" / "catalina.sh").exists():
        return entries[0]
    return None


def _extract_zip(archive: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()
    try:
        with zipfile.ZipFile(archive) as bundle:
            for member in bundle.infolist():
                resolved = (destination / member.filename).resolve()
                if root != resolved and root not in resolved.parents:
                    raise ArtifactError(f"Refusing to extract {member.filename!r} outside {root}.")
            bundle.extractall(destination)
    except zipfile.BadZipFile as exc:
        raise ArtifactError(f"{archive} is not a valid zip archive: {exc}") from exc


def _make_scripts_executable(bin_dir: Path) -> None:
    if not bin_dir.is_dir():
        return
    for script in bin_dir.glob("*.sh"):
        mode = script.stat().st_mode
        script.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


__all__ = ["ArtifactCache", "ArtifactError", "ArtifactResult", "jar_file_name"]
