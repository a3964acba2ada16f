from .memory import MemoryKeyValueStore, MemoryTurnStore

__all__ = ["MemoryKeyValueStore", "MemoryTurnStore"]
