"""Port conflict detection and resolution for server instances.

The resolver never writes anything: it takes a :class:`ServerConfig`, looks at
the ports claimed by other running instances (derived from their instance
directories) and at what the operating system reports as bound, and returns a
new configuration together with a report of every reassignment.
"""
from __future__ import annotations

import logging
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

from .server_config import SHUTDOWN_PORT_OFFSET, ServerConfig
from .state import ServerRepository

LOGGER = logging.getLogger(__name__)

MAX_PORT = 65535


class PortConflictError(RuntimeError):
    """Raised when a port conflict cannot be resolved automatically."""


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Return ``True`` when *port* can be bound on *host* right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


@dataclass(frozen=True)
class PortConflict:
    """One port that had to be moved."""

    field: str
    requested: int
    assigned: int
    reason: str

    def describe(self) -> str:
        """Return a one-line human description."""
        return f"{self.field} port {self.requested} {self.reason}, reassigning to port {self.assigned}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "field": self.field,
            "requested": self.requested,
            "assigned": self.assigned,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PortResolution:
    """Outcome of :meth:`PortResolver.resolve`."""

    config: ServerConfig
    conflicts: tuple[PortConflict, ...] = ()
    dry_run: bool = False

    @property
    def has_conflicts(self) -> bool:
        """Return whether any port was reassigned."""
        return bool(self.conflicts)

    def summary(self) -> str:
        """Return the human readable conflict report."""
        if not self.conflicts:
            return "All ports are available."
        lines = ["Port conflicts detected and resolved:"]
        lines.extend(f"  - {conflict.describe()}" for conflict in self.conflicts)
        return "\n".join(lines)

    def ports(self) -> dict[str, int]:
        """Return the final port assignment keyed by role."""
        config = self.config
        assigned = {"http": config.port, "shutdown": config.effective_shutdown_port}
        if config.monitoring.enabled:
            assigned["jmx"] = config.monitoring.jmx_port
        if config.https.enabled:
            assigned["https"] = config.https.port
        return assigned


@dataclass(slots=True)
class PortResolver:
    """Assign non-conflicting ports to a configuration."""

    repository: ServerRepository
    probe: Callable[[int], bool] = is_port_available
    scan_limit: int = 100

    def resolve(
        self,
        config: ServerConfig,
        *,
        exclude: str | None = None,
        dry_run: bool = False,
    ) -> PortResolution:
        """Return *config* with every port conflict resolved.

        *exclude* names the instance being (re)started so its own ports do not
        count as claimed. The HTTP port moves to the lowest acceptable port at
        or above the requested one; the shutdown port follows it (HTTP + 1000)
        unless it was pinned explicitly, in which case a conflict on it is
        fatal.
        """
        claimed = self.repository.claimed_ports(exclude=exclude)
        conflicts: list[PortConflict] = []
        pinned_shutdown = config.shutdown_port is not None
        reserved: set[int] = set()

        jmx_requested = config.monitoring.jmx_port if config.monitoring.enabled else None

        # HTTP ------------------------------------------------------------
        http_port = config.port
        http_reason = self._reason(http_port, claimed)
        if http_reason is None and http_port == jmx_requested:
            http_reason = f"conflicts with the JMX port ({jmx_requested})"
        if http_reason is None and not pinned_shutdown:
            shutdown_reason = self._reason(http_port + SHUTDOWN_PORT_OFFSET, claimed)
            if shutdown_reason is not None:
                http_reason = f"has an unusable shutdown port ({shutdown_reason})"
        if http_reason is not None:
            avoid = {port for port in (jmx_requested, config.shutdown_port) if port is not None}
            http_port = self._scan(
                http_port + 1,
                claimed,
                avoid,
                check_shutdown=not pinned_shutdown,
                label="HTTP",
            )
            conflicts.append(PortConflict("HTTP", config.port, http_port, http_reason))
        reserved.add(http_port)

        # Shutdown --------------------------------------------------------
        if config.shutdown_port is not None:
            shutdown_port = config.shutdown_port
            if shutdown_port == http_port:
                raise PortConflictError(
                    f"Shutdown port {shutdown_port} is pinned in lucee.json but equals the "
                    "HTTP port."
                )
            reason = self._reason(shutdown_port, claimed)
            if reason is not None:
                raise PortConflictError(
                    f"Shutdown port {shutdown_port} is pinned in lucee.json but {reason}. "
                    "Change or remove shutdownPort."
                )
        else:
            shutdown_port = http_port + SHUTDOWN_PORT_OFFSET
        reserved.add(shutdown_port)

        # JMX -------------------------------------------------------------
        monitoring = config.monitoring
        if jmx_requested is not None:
            jmx_port = jmx_requested
            reason = self._reason(jmx_port, claimed)
            if reason is None and jmx_port in reserved:
                reason = "conflicts with the HTTP or shutdown port"
            if reason is not None:
                jmx_port = self._scan(jmx_port + 1, claimed, reserved, label="JMX")
                conflicts.append(PortConflict("JMX", jmx_requested, jmx_port, reason))
            reserved.add(jmx_port)
            monitoring = replace(monitoring, jmx_port=jmx_port)

        # HTTPS -----------------------------------------------------------
        https = config.https
        if https.enabled:
            https_port = https.port
            reason = self._reason(https_port, claimed)
            if reason is None and https_port in reserved:
                reason = "conflicts with another port of this server"
            if reason is not None:
                https_port = self._scan(https_port + 1, claimed, reserved, label="HTTPS")
                conflicts.append(PortConflict("HTTPS", https.port, https_port, reason))
            https = replace(https, port=https_port)

        resolved = replace(
            config,
            port=http_port,
            shutdown_port=config.shutdown_port,
            monitoring=monitoring,
            https=https,
        )
        for conflict in conflicts:
            LOGGER.info(conflict.describe())
        return PortResolution(config=resolved, conflicts=tuple(conflicts), dry_run=dry_run)

    # Internal helpers -------------------------------------------------
    def _reason(self, port: int, claimed: dict[int, str]) -> str | None:
        owner = claimed.get(port)
        if owner is not None:
            return f"is used by server '{owner}'"
        if not self.probe(port):
            return "is already in use"
        return None

    def _scan(
        self,
        start: int,
        claimed: dict[int, str],
        avoid: Iterable[int],
        *,
        check_shutdown: bool = False,
        label: str,
    ) -> int:
        blocked = set(avoid)
        candidate = start
        for _ in range(self.scan_limit):
            if candidate > MAX_PORT:
                break
            if candidate not in blocked and self._reason(candidate, claimed) is None:
                if not check_shutdown:
                    return candidate
                shutdown = candidate + SHUTDOWN_PORT_OFFSET
                if (
                    shutdown <= MAX_PORT
                    and shutdown not in blocked
                    and self._reason(shutdown, claimed) is None
                ):
                    return candidate
            candidate += 1
        raise PortConflictError(
            f"No free {label} port found in {self.scan_limit} ports starting at {start}."
        )


__all__ = [
    "PortConflict",
    "PortConflictError",
    "PortResolution",
    "PortResolver",
    "is_port_available",
]
