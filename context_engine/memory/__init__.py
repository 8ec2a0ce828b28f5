from .janitor import MemoryJanitor, SweepReport
from .locks import SessionLockTable
from .postgres_store import PostgresSessionStore
from .semantic_index import QdrantSemanticIndex
from .store import MemoryStore

__all__ = [
    "MemoryJanitor",
    "MemoryStore",
    "PostgresSessionStore",
    "QdrantSemanticIndex",
    "SessionLockTable",
    "SweepReport",
]
