"""Enumerations for CLI exit codes shared by every command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``VALIDATION`` covers configuration, compatibility and identity problems,
    ``ENVIRONMENT`` a missing or broken container installation, and
    ``PROVIDER`` failures reported by a backend tool or the launched server.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


__all__ = ["ExitCode"]
