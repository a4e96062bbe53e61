"""Project ``.env`` loading and variable substitution for ``lucee.json``.

Two reference forms are understood inside string values:

``#env:NAME#`` / ``#env:NAME:-fallback#``
    The preferred form. Resolved everywhere, including the ``configuration``
    block that is forwarded to Lucee.

``${NAME}`` / ``${NAME:-fallback}``
    The older form. Resolved everywhere except protected blocks, because Lucee
    resolves its own ``${...}`` placeholders at runtime.

A reference whose variable is unset and which carries no fallback is left
untouched; substitution never fails.
"""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

ENV_REFERENCE = re.compile(r"#env:([A-Za-z_][A-Za-z0-9_.]*)(?::-(.*?))?#")
LEGACY_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_.]*)(?::-([^}]*))?\}")
PROTECTED_KEYS = frozenset({"configuration"})
DOTENV_NAME = ".env"


def parse_dotenv(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, ignoring blanks and ``#`` comments."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def load_dotenv(project_dir: Path) -> dict[str, str]:
    """Return the variables declared in ``<project_dir>/.env`` (empty if absent)."""
    path = project_dir / DOTENV_NAME
    if not path.is_file():
        return {}
    LOGGER.debug("Loading environment file %s", path)
    return parse_dotenv(path.read_text(encoding="utf-8"))


@dataclass(frozen=True)
class VariableResolver:
    """Look up substitution variables from ``.env`` values, then the environment.

    The process environment is only read, never modified.
    """

    dotenv: Mapping[str, str] = field(default_factory=dict)
    environ: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def for_project(
        cls,
        project_dir: Path,
        env: Mapping[str, str] | None = None,
    ) -> VariableResolver:
        """Build a resolver for *project_dir* layered over *env* (or ``os.environ``)."""
        return cls(
            dotenv=load_dotenv(project_dir),
            environ=dict(os.environ if env is None else env),
        )

    def lookup(self, name: str) -> str | None:
        """Return the value for *name*, or ``None`` when it is unset."""
        if name in self.dotenv:
            return self.dotenv[name]
        return self.environ.get(name)

    def resolve_text(self, text: str, *, legacy: bool = True) -> str:
        """Substitute references inside a single string."""
        result = ENV_REFERENCE.sub(self._replace, text)
        if legacy:
            result = LEGACY_REFERENCE.sub(self._replace, result)
        return result

    def resolve(self, value: object, *, legacy: bool = True) -> object:
        """Return a copy of *value* with every string substituted.

        Mapping keys listed in :data:`PROTECTED_KEYS` only receive the
        ``#env:`` form.
        """
        if isinstance(value, str):
            return self.resolve_text(value, legacy=legacy)
        if isinstance(value, Mapping):
            return {
                key: self.resolve(item, legacy=legacy and key not in PROTECTED_KEYS)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [self.resolve(item, legacy=legacy) for item in value]
        return value

    def _replace(self, match: re.Match[str]) -> str:
        found = self.lookup(match.group(1))
        if found is not None:
            return found
        fallback = match.group(2)
        if fallback is not None:
            return fallback
        return match.group(0)


def contains_reference(text: str) -> bool:
    """Return ``True`` when *text* still holds an unresolved reference."""
    return bool(ENV_REFERENCE.search(text) or LEGACY_REFERENCE.search(text))


__all__ = [
    "PROTECTED_KEYS",
    "VariableResolver",
    "contains_reference",
    "load_dotenv",
    "parse_dotenv",
]
