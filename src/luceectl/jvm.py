"""JVM option assembly and Java agent selection."""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .server_config import ServerConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentOverrides:
    """Per-start adjustments to the agents enabled in ``lucee.json``.

    ``include`` replaces the configured set entirely, ``enable`` and
    ``disable`` add to or remove from it, and ``disable_all`` wins over
    everything else.
    """

    include: frozenset[str] | None = None
    enable: frozenset[str] = field(default_factory=frozenset)
    disable: frozenset[str] = field(default_factory=frozenset)
    disable_all: bool = False

    @classmethod
    def from_cli(
        cls,
        *,
        include: str | None = None,
        enable: Iterable[str] = (),
        disable: Iterable[str] = (),
        disable_all: bool = False,
    ) -> AgentOverrides:
        """Build overrides from comma separated CLI values."""
        return cls(
            include=frozenset(_split(include)) if include is not None else None,
            enable=frozenset(item for value in enable for item in _split(value)),
            disable=frozenset(item for value in disable for item in _split(value)),
            disable_all=disable_all,
        )


def resolve_active_agents(
    config: ServerConfig,
    overrides: AgentOverrides | None = None,
) -> list[str]:
    """Return the agent ids to activate, in ``lucee.json`` declaration order."""
    overrides = overrides or AgentOverrides()
    if overrides.disable_all:
        return []
    if overrides.include is not None:
        active = set(overrides.include)
    else:
        active = {agent_id for agent_id, agent in config.agents.items() if agent.enabled}
    active |= overrides.enable
    active -= overrides.disable

    unknown = sorted(active - set(config.agents))
    for agent_id in unknown:
        LOGGER.warning("Agent '%s' is not defined in lucee.json; ignoring.", agent_id)
    return [agent_id for agent_id in config.agents if agent_id in active]


def build_catalina_opts(
    config: ServerConfig,
    active_agents: Iterable[str] = (),
) -> list[str]:
    """Return the JVM options for the server process.

    Order: heap sizing, JMX flags (when monitoring is enabled), the arguments
    of each active agent, then ``jvm.additionalArgs``.
    """
    options = [f"-Xms{config.jvm.min_memory}", f"-Xmx{config.jvm.max_memory}"]
    if config.monitoring.enabled:
        port = config.monitoring.jmx_port
        options.extend(
            [
                "-Dcom.sun.management.jmxremote",
                f"-Dcom.sun.management.jmxremote.port={port}",
                f"-Dcom.sun.management.jmxremote.rmi.port={port}",
                "-Dcom.sun.management.jmxremote.authenticate=false",
                "-Dcom.sun.management.jmxremote.ssl=false",
                "-Djava.rmi.server.hostname=127.0.0.1",
            ]
        )
    for agent_id in active_agents:
        agent = config.agents.get(agent_id)
        if agent is not None:
            options.extend(agent.jvm_args)
    options.extend(config.jvm.additional_args)
    return options


def join_opts(options: Iterable[str]) -> str:
    """Join JVM options into a single ``CATALINA_OPTS`` style string."""
    return " ".join(option for option in options if option)


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


__all__ = ["AgentOverrides", "build_catalina_opts", "join_opts", "resolve_active_agents"]
