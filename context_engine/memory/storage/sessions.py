from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import aiosqlite

from ..models import Session, to_iso, utcnow
from .utils import _row_to_session, _sqlite_memory_connection

_SESSION_COLUMNS = (
    "session_id, character_id, created_at, last_active_at, total_token_count, summary, summary_updated_at"
)


class MemorySessionsMixin:
    async def ensure_session(self, session_id: str, character_id: str) -> Session:
        now = to_iso(utcnow())
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                """
                INSERT INTO sessions (session_id, character_id, created_at, last_active_at, total_token_count)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT(session_id) DO NOTHING
                """,
                (session_id, character_id, now, now),
            )
            await db.commit()
            async with db.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_session(row)

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_session(row)

    async def list_sessions(self) -> List[Session]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY last_active_at ASC, session_id ASC"
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]

    async def set_session_character(self, session_id: str, character_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE sessions SET character_id = ?, last_active_at = ? WHERE session_id = ?",
                (character_id, to_iso(utcnow()), session_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def touch(self, session_id: str, *, at: datetime | None = None) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                "UPDATE sessions SET last_active_at = ? WHERE session_id = ?",
                (to_iso(at or utcnow()), session_id),
            )
            await db.commit()

    async def set_session_summary(self, session_id: str, summary: str) -> None:
        cleaned = summary.strip()
        if not cleaned:
            return
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                "UPDATE sessions SET summary = ?, summary_updated_at = ? WHERE session_id = ?",
                (cleaned, to_iso(utcnow()), session_id),
            )
            await db.commit()

    async def delete_session(self, session_id: str) -> int:
        """Delete a session with all of its messages, leaving tombstones for their embeddings."""
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO embedding_tombstones (embedding_ref, message_id, session_id, created_at)
                SELECT embedding_ref, message_id, session_id, ?
                FROM messages
                WHERE session_id = ? AND embedding_ref IS NOT NULL
                """,
                (to_iso(utcnow()), session_id),
            )
            cursor = await db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            deleted_messages = max(0, int(cursor.rowcount))
            await db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            await db.commit()
        return deleted_messages
