"""Lucee extensions recorded in a project's ``lucee-lock.json``.

Extensions known by id are handed to Lucee through ``LUCEE_EXTENSIONS``;
extensions recorded with a ``path:`` source are copied into the instance's
``lucee-server/deploy`` folder where Lucee installs them on startup.
"""
from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

LOCK_FILE_NAME = "lucee-lock.json"
PATH_PREFIX = "path:"
PROVIDER_SOURCE = "extension-provider"


class ExtensionError(RuntimeError):
    """Raised when the lock file is unreadable or an extension cannot be deployed."""


@dataclass(frozen=True)
class LockedExtension:
    """One ``type: extension`` entry from the lock file."""

    name: str
    extension_id: str | None = None
    source: str | None = None
    version: str | None = None
    dev: bool = False

    @property
    def path(self) -> Path | None:
        """Return the file to deploy for ``path:`` sources."""
        if self.source and self.source.startswith(PATH_PREFIX):
            return Path(self.source[len(PATH_PREFIX):])
        return None

    @property
    def is_url(self) -> bool:
        """Return whether the source is a remote URL."""
        return bool(self.source) and "://" in str(self.source) and self.path is None


@dataclass(frozen=True)
class ExtensionPlan:
    """What an instance needs: the env value plus files to deploy."""

    extensions: tuple[LockedExtension, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def env_value(self) -> str:
        """Return the comma separated ids for ``LUCEE_EXTENSIONS``."""
        ids: list[str] = []
        for extension in self.extensions:
            if extension.extension_id and extension.extension_id not in ids:
                ids.append(extension.extension_id)
        return ",".join(ids)

    @property
    def deployable(self) -> list[LockedExtension]:
        """Return the extensions that are copied from a local file."""
        return [extension for extension in self.extensions if extension.path is not None]


def read_lock_file(project_dir: Path) -> ExtensionPlan:
    """Return the extension plan for *project_dir* (empty without a lock file)."""
    path = project_dir / LOCK_FILE_NAME
    if not path.is_file():
        return ExtensionPlan()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ExtensionError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ExtensionError(f"{path} must contain a JSON object at the top level.")

    extensions: list[LockedExtension] = []
    warnings: list[str] = []
    for section, dev in (("dependencies", False), ("devDependencies", True)):
        entries = payload.get(section) or {}
        if not isinstance(entries, Mapping):
            raise ExtensionError(f"{path}: '{section}' must be an object.")
        for name, entry in entries.items():
            if not isinstance(entry, Mapping) or entry.get("type") != "extension":
                continue
            extension = LockedExtension(
                name=str(name),
                extension_id=_clean(entry.get("id")),
                source=_clean(entry.get("source")),
                version=_clean(entry.get("version")),
                dev=dev,
            )
            if extension.is_url:
                warnings.append(
                    f"Extension '{extension.name}' has a URL source and is not deployed; "
                    "install it into the lock file as a local path."
                )
            extensions.append(extension)
    return ExtensionPlan(extensions=tuple(extensions), warnings=tuple(warnings))


def deploy_extensions(plan: ExtensionPlan, lucee_server_dir: Path) -> list[Path]:
    """Copy every ``path:`` extension into ``deploy/``; return the copied files."""
    deployable = plan.deployable
    if not deployable:
        return []
    deploy_dir = lucee_server_dir / "deploy"
    deploy_dir.mkdir(parents=True, exist_ok=True)
    copied: list[Path] = []
    for extension in deployable:
        source = extension.path
        if source is None:  # pragma: no cover - filtered by deployable
            continue
        if not source.is_file():
            raise ExtensionError(f"Extension file for '{extension.name}' not found: {source}")
        target = deploy_dir / source.name
        if target.exists():
            LOGGER.debug("Extension %s already deployed", target.name)
            continue
        shutil.copy2(source, target)
        copied.append(target)
    return copied


def _clean(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "ExtensionError",
    "ExtensionPlan",
    "LockedExtension",
    "LOCK_FILE_NAME",
    "deploy_extensions",
    "read_lock_file",
]
