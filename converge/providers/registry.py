import logging
from typing import Any, Dict, Iterable, Optional

from converge.errors import ConfigError
from converge.models.node import ResourceNode
from converge.providers.base import Provider
from converge.providers.memory import MemoryProvider
from converge.providers.sandbox import SandboxProvider

logger = logging.getLogger(__name__)

PLUGINS = {
    "memory": MemoryProvider,
    "sandbox": SandboxProvider,
}

DEFAULT_BINDING = "default"


class ProviderRegistry:
    """Maps provider names used by declarations to plugin instances."""

    def __init__(self, providers: Optional[Dict[str, Provider]] = None, default: Optional[Provider] = None):
        self._providers: Dict[str, Provider] = dict(providers or {})
        self.default = default

    def register(self, name: str, provider: Provider) -> None:
        self._providers[name] = provider

    def get(self, name: str) -> Provider:
        provider = self._providers.get(name, self.default)
        if provider is None:
            raise ConfigError(f"no provider configured for '{name}'")
        return provider

    def names(self) -> Iterable[str]:
        return sorted(self._providers)

    def computed_attributes(self, node: ResourceNode):
        return self.get(node.provider).computed_attributes(node.resource_type)

    @classmethod
    def from_settings(cls, bindings: Dict[str, Dict[str, Any]]) -> "ProviderRegistry":
        registry = cls()
        for name, options in bindings.items():
            options = dict(options or {})
            plugin = options.pop("plugin", "sandbox")
            factory = PLUGINS.get(plugin)
            if factory is None:
                raise ConfigError(f"provider '{name}': unknown plugin '{plugin}' (choose from {', '.join(sorted(PLUGINS))})")
            try:
                provider = factory(name=name, **options)
            except TypeError as exc:
                raise ConfigError(f"provider '{name}': {exc}") from exc
            if name == DEFAULT_BINDING:
                registry.default = provider
            else:
                registry.register(name, provider)
            logger.debug("bound provider %s to plugin %s", name, plugin)
        return registry
