from __future__ import annotations

from typing import List

import aiosqlite

from ..models import Tombstone, parse_iso, to_iso, utcnow
from .utils import _sqlite_memory_connection


class MemoryTombstonesMixin:
    async def add_tombstone(self, embedding_ref: str, message_id: int, session_id: str) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO embedding_tombstones (embedding_ref, message_id, session_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (embedding_ref, int(message_id), session_id, to_iso(utcnow())),
            )
            await db.commit()

    async def pending_tombstones(self, session_id: str | None = None, limit: int = 500) -> List[Tombstone]:
        query = """
            SELECT embedding_ref, message_id, session_id, created_at
            FROM embedding_tombstones
        """
        params: tuple = ()
        if session_id is not None:
            query += " WHERE session_id = ?"
            params = (session_id,)
        query += " ORDER BY created_at ASC, embedding_ref ASC LIMIT ?"
        params = params + (max(1, int(limit)),)

        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [
            Tombstone(
                embedding_ref=str(row["embedding_ref"]),
                message_id=int(row["message_id"]),
                session_id=str(row["session_id"]),
                created_at=parse_iso(row["created_at"]),
            )
            for row in rows
        ]

    async def clear_tombstone(self, embedding_ref: str) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("DELETE FROM embedding_tombstones WHERE embedding_ref = ?", (embedding_ref,))
            await db.commit()
