"""Runtime providers: one per supported server backend."""
from __future__ import annotations

from ..server_config import RuntimeConfig
from .base import (
    InstallationError,
    Preparation,
    ProviderContext,
    ProviderError,
    RuntimeProvider,
    ServerInstance,
    StartRequest,
    start_server,
)
from .docker import DockerProvider
from .express import ExpressProvider
from .jetty import JettyProvider
from .tomcat import TomcatProvider

PROVIDERS: dict[str, type] = {
    ExpressProvider.runtime_type: ExpressProvider,
    TomcatProvider.runtime_type: TomcatProvider,
    JettyProvider.runtime_type: JettyProvider,
    DockerProvider.runtime_type: DockerProvider,
}


def provider_for(runtime: RuntimeConfig | str | None, context: ProviderContext) -> RuntimeProvider:
    """Return the provider for *runtime* (a runtime config or its type name).

    Instances recorded before the runtime marker existed default to Lucee Express.
    """
    runtime_type = runtime if isinstance(runtime, str) or runtime is None else runtime.type
    provider_cls = PROVIDERS.get(runtime_type or ExpressProvider.runtime_type)
    if provider_cls is None:
        raise ProviderError(f"Unknown runtime type '{runtime_type}'.")
    return provider_cls(context)


__all__ = [
    "DockerProvider",
    "ExpressProvider",
    "InstallationError",
    "JettyProvider",
    "PROVIDERS",
    "Preparation",
    "ProviderContext",
    "ProviderError",
    "RuntimeProvider",
    "ServerInstance",
    "StartRequest",
    "TomcatProvider",
    "provider_for",
    "start_server",
]
