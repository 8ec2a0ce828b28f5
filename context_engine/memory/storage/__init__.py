from .messages import MemoryMessagesMixin, SqliteMessageWindow
from .schema import MemorySchemaMixin
from .sessions import MemorySessionsMixin
from .tombstones import MemoryTombstonesMixin

__all__ = [
    "MemorySchemaMixin",
    "MemorySessionsMixin",
    "MemoryMessagesMixin",
    "MemoryTombstonesMixin",
    "SqliteMessageWindow",
]
