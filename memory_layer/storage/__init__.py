from memory_layer.storage.interface import MemoryStore
from memory_layer.storage.in_memory import InMemoryStore
from memory_layer.storage.durable import DurableStore
from memory_layer.storage.dual_write import DualWriteStore
from memory_layer.storage.selector import build_memory_store, durable_stores

__all__ = [
    "MemoryStore",
    "InMemoryStore",
    "DurableStore",
    "DualWriteStore",
    "build_memory_store",
    "durable_stores",
]
