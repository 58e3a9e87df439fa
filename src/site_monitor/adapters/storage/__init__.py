"""Storage adapters."""

from site_monitor.adapters.storage.key_cipher import PlaintextKeyCipher
from site_monitor.adapters.storage.memory_store import InMemoryRepository
from site_monitor.adapters.storage.yaml_store import YamlRepository

__all__ = ["InMemoryRepository", "PlaintextKeyCipher", "YamlRepository"]
