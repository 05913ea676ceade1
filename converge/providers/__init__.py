from converge.providers.base import Provider
from converge.providers.memory import MemoryProvider
from converge.providers.registry import PLUGINS, ProviderRegistry
from converge.providers.sandbox import SandboxProvider

__all__ = ["PLUGINS", "MemoryProvider", "Provider", "ProviderRegistry", "SandboxProvider"]
