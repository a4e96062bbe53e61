"""Persisted instance state for luceectl."""
from __future__ import annotations

from .registry import (
    CONTAINER_MARKER,
    CONTAINER_PID,
    ENVIRONMENT_MARKER,
    JETTY_STOP_MARKER,
    JMX_MARKER,
    PID_FILE,
    PROJECT_MARKER,
    RUNTIME_MARKER,
    InstanceRecord,
    ServerRepository,
    StateRegistryError,
)

__all__ = [
    "CONTAINER_MARKER",
    "CONTAINER_PID",
    "ENVIRONMENT_MARKER",
    "InstanceRecord",
    "JETTY_STOP_MARKER",
    "JMX_MARKER",
    "PID_FILE",
    "PROJECT_MARKER",
    "RUNTIME_MARKER",
    "ServerRepository",
    "StateRegistryError",
]
