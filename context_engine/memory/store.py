from __future__ import annotations

from .storage.messages import MemoryMessagesMixin
from .storage.schema import MemorySchemaMixin
from .storage.sessions import MemorySessionsMixin
from .storage.tombstones import MemoryTombstonesMixin
from .storage.utils import _sqlite_memory_connection


class MemoryStore(
    MemorySchemaMixin,
    MemorySessionsMixin,
    MemoryMessagesMixin,
    MemoryTombstonesMixin,
):
    """Durable per-session message log with embedding tombstones."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")
