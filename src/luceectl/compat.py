"""Servlet API compatibility between Lucee and external containers.

Lucee 7 moved from the ``javax.servlet`` API to ``jakarta.servlet``; Tomcat
made the same move in 10 and (as far as luceectl is concerned) Jetty in 12.
Pairing an engine and a container from different generations fails at
runtime with class-loading errors, so it is rejected before anything is
written or launched.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path

import yaml
from packaging.version import InvalidVersion, Version

_LEADING_MAJOR = re.compile(r"^\s*v?(\d+)")


class CompatibilityError(RuntimeError):
    """Raised when engine and container use different servlet namespaces."""


@dataclass(frozen=True)
class ContainerGeneration:
    """Servlet generation boundary for one container family."""

    family: str
    display_name: str
    jakarta_from: int
    javax_example: str
    jakarta_example: str

    def uses_jakarta(self, major: int) -> bool:
        """Return whether container *major* implements ``jakarta.servlet``."""
        return major >= self.jakarta_from


@dataclass(frozen=True)
class ServletCompatibility:
    """The compatibility matrix loaded from ``servlet-compat.yaml``."""

    engine_jakarta_from: int
    containers: Mapping[str, ContainerGeneration]
    javax_namespace: str = "javax.servlet"
    jakarta_namespace: str = "jakarta.servlet"
    path: Path | None = None

    def engine_uses_jakarta(self, major: int) -> bool:
        """Return whether Lucee *major* is built against ``jakarta.servlet``."""
        return major >= self.engine_jakarta_from

    def namespace(self, jakarta: bool) -> str:
        """Return the package name for a generation."""
        return self.jakarta_namespace if jakarta else self.javax_namespace


@dataclass(frozen=True)
class CompatibilityResult:
    """Outcome of a compatibility check that did not fail."""

    status: str
    container: str
    container_major: int | None
    engine_version: str
    engine_major: int | None
    namespace: str | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_unknown(self) -> bool:
        """Return whether the check was skipped for lack of information."""
        return self.status == "unknown"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status,
            "container": self.container,
            "container_major": self.container_major,
            "engine_version": self.engine_version,
            "engine_major": self.engine_major,
            "namespace": self.namespace,
            "warnings": list(self.warnings),
        }


def load_servlet_compatibility(path: str | Path | None = None) -> ServletCompatibility:
    """Load the matrix from *path* or the packaged default."""
    resolved_path: Path | None = None
    if path is None:
        resource = resources.files("luceectl.data").joinpath("servlet-compat.yaml")
        try:
            raw_text = resource.read_text(encoding="utf-8")
        except FileNotFoundError as exc:  # pragma: no cover - packaged resource missing
            raise CompatibilityError("Packaged servlet-compat.yaml is missing.") from exc
    else:
        resolved_path = Path(path)
        try:
            raw_text = resolved_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise CompatibilityError(f"Compatibility file not found: {resolved_path}") from exc

    try:
        payload = yaml.safe_load(raw_text) or {}
    except yaml.YAMLError as exc:
        raise CompatibilityError(f"Failed to parse compatibility YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise CompatibilityError("Compatibility YAML must contain a mapping at the root.")

    engine = payload.get("engine") or {}
    namespaces = payload.get("namespaces") or {}
    containers: dict[str, ContainerGeneration] = {}
    raw_containers = payload.get("containers") or {}
    if not isinstance(raw_containers, dict):
        raise CompatibilityError("'containers' must be a mapping.")
    for family, entry in raw_containers.items():
        if not isinstance(entry, dict):
            raise CompatibilityError(f"Container entry '{family}' must be a mapping.")
        examples = entry.get("examples") or {}
        containers[str(family)] = ContainerGeneration(
            family=str(family),
            display_name=str(entry.get("display_name") or str(family).title()),
            jakarta_from=_parse_int(entry.get("jakarta_from"), f"containers.{family}.jakarta_from"),
            javax_example=str(examples.get("javax", "")),
            jakarta_example=str(examples.get("jakarta", "")),
        )

    return ServletCompatibility(
        engine_jakarta_from=_parse_int(engine.get("jakarta_from"), "engine.jakarta_from"),
        containers=containers,
        javax_namespace=str(namespaces.get("javax", "javax.servlet")),
        jakarta_namespace=str(namespaces.get("jakarta", "jakarta.servlet")),
        path=resolved_path,
    )


def engine_major(version: str | None) -> int | None:
    """Return the major version of a Lucee version string, if it can be parsed."""
    if not version:
        return None
    try:
        return Version(version.strip().lstrip("v")).major
    except InvalidVersion:
        match = _LEADING_MAJOR.match(version)
        return int(match.group(1)) if match else None


def uses_jakarta_engine(version: str | None, matrix: ServletCompatibility | None = None) -> bool:
    """Return whether Lucee *version* needs the jakarta servlet classes.

    Unparseable versions are treated as the older ``javax`` generation.
    """
    matrix = matrix or load_servlet_compatibility()
    major = engine_major(version)
    return major is not None and matrix.engine_uses_jakarta(major)


def validate_compatibility(
    container: str,
    container_major: int | None,
    lucee_version: str,
    *,
    matrix: ServletCompatibility | None = None,
) -> CompatibilityResult:
    """Check that *container* (``tomcat``/``jetty``) can host *lucee_version*.

    Unknown container or engine versions produce an ``unknown`` result with a
    warning instead of an error. A generation mismatch raises
    :class:`CompatibilityError`.
    """
    matrix = matrix or load_servlet_compatibility()
    generation = matrix.containers.get(container)
    if generation is None:
        raise CompatibilityError(f"No compatibility data for container '{container}'.")
    major = engine_major(lucee_version)

    if not container_major:
        return CompatibilityResult(
            status="unknown",
            container=container,
            container_major=None,
            engine_version=lucee_version,
            engine_major=major,
            warnings=(
                f"Could not detect the {generation.display_name} version; "
                "skipping the servlet compatibility check.",
            ),
        )
    if major is None:
        return CompatibilityResult(
            status="unknown",
            container=container,
            container_major=container_major,
            engine_version=lucee_version,
            engine_major=None,
            warnings=(
                f"Could not parse Lucee version '{lucee_version}'; "
                "skipping the servlet compatibility check.",
            ),
        )

    container_jakarta = generation.uses_jakarta(container_major)
    engine_jakarta = matrix.engine_uses_jakarta(major)
    if container_jakarta != engine_jakarta:
        raise CompatibilityError(
            _mismatch_message(matrix, generation, container_major, lucee_version, engine_jakarta)
        )
    return CompatibilityResult(
        status="compatible",
        container=container,
        container_major=container_major,
        engine_version=lucee_version,
        engine_major=major,
        namespace=matrix.namespace(engine_jakarta),
    )


def _mismatch_message(
    matrix: ServletCompatibility,
    generation: ContainerGeneration,
    container_major: int,
    lucee_version: str,
    engine_jakarta: bool,
) -> str:
    engine_ns = matrix.namespace(engine_jakarta)
    container_ns = matrix.namespace(not engine_jakarta)
    name = generation.display_name
    if engine_jakarta:
        engine_fix = f"Use a Lucee version below {matrix.engine_jakarta_from} (set lucee.version)."
        container_fix = (
            f"Use {generation.jakarta_example}, which supports {matrix.jakarta_namespace}."
        )
    else:
        engine_fix = (
            f"Use Lucee {matrix.engine_jakarta_from} or newer (set lucee.version), "
            f"which supports {matrix.jakarta_namespace}."
        )
        container_fix = f"Use {generation.javax_example}, which supports {matrix.javax_namespace}."
    return (
        f"Lucee {lucee_version} is incompatible with {name} {container_major}.\n"
        f"{name} {container_major} implements {container_ns}, "
        f"but Lucee {lucee_version} requires {engine_ns}.\n"
        "Solutions:\n"
        f"  1. {engine_fix}\n"
        f"  2. {container_fix}"
    )


def _parse_int(value: object, label: str) -> int:
    if isinstance(value, bool) or value is None:
        raise CompatibilityError(f"{label} must be an integer.")
    try:
        return int(str(value))
    except ValueError as exc:
        raise CompatibilityError(f"{label} must be an integer.") from exc


__all__ = [
    "CompatibilityError",
    "CompatibilityResult",
    "ContainerGeneration",
    "ServletCompatibility",
    "engine_major",
    "load_servlet_compatibility",
    "uses_jakarta_engine",
    "validate_compatibility",
]
