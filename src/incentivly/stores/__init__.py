from incentivly.stores.json_file import JsonFileStore
from incentivly.stores.memory import MemoryStore

__all__ = ["JsonFileStore", "MemoryStore"]
