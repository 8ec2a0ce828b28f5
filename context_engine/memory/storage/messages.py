from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional, Sequence

import aiosqlite

from ...errors import StorageError
from ..models import Message, to_iso, utcnow
from .utils import _clamp, _row_to_message, _sqlite_memory_connection

_MESSAGE_COLUMNS = "message_id, session_id, role, content, token_count, confidence, embedding_ref, created_at"


class SqliteMessageWindow:
    """Most-recent-last view over a session's newest messages.

    Every iteration re-runs the query, so a window can be iterated again
    after new messages were appended.
    """

    def __init__(self, db_path: Path, session_id: str, limit: int) -> None:
        self.db_path = db_path
        self.session_id = session_id
        self.limit = max(0, int(limit))

    async def _fetch(self) -> List[Message]:
        if self.limit <= 0:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE session_id = ?
                ORDER BY message_id DESC
                LIMIT ?
                """,
                (self.session_id, self.limit),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_message(row) for row in reversed(rows)]

    async def __aiter__(self) -> AsyncIterator[Message]:
        for message in await self._fetch():
            yield message

    async def collect(self) -> List[Message]:
        return await self._fetch()


class MemoryMessagesMixin:
    async def append(self, session_id: str, message: Message) -> int:
        message_ids = await self.append_exchange(session_id, [message])
        return message_ids[0]

    async def append_exchange(self, session_id: str, messages: Sequence[Message]) -> List[int]:
        """Insert messages in one transaction; returns their ids in order."""
        for message in messages:
            if message.session_id != session_id:
                raise ValueError(f"Message belongs to session {message.session_id!r}, not {session_id!r}")
        if not messages:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE sessions
                SET total_token_count = total_token_count + ?, last_active_at = ?
                WHERE session_id = ?
                """,
                (sum(int(message.token_count) for message in messages), to_iso(utcnow()), session_id),
            )
            if cursor.rowcount <= 0:
                await db.rollback()
                raise StorageError(f"Unknown session {session_id!r}")
            message_ids: List[int] = []
            for message in messages:
                cursor = await db.execute(
                    """
                    INSERT INTO messages (session_id, role, content, token_count, confidence, embedding_ref, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        message.role,
                        message.content,
                        int(message.token_count),
                        _clamp(float(message.confidence), 0.0, 1.0),
                        message.embedding_ref,
                        to_iso(message.created_at),
                    ),
                )
                message_ids.append(int(cursor.lastrowid))
            await db.commit()
            return message_ids

    def recent(self, session_id: str, limit: int) -> SqliteMessageWindow:
        return SqliteMessageWindow(self.db_path, session_id, limit)

    async def get(self, message_id: int) -> Optional[Message]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id = ?",
                (int(message_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_message(row)

    async def delete(self, message_id: int, *, tombstone_ref: str | None = None) -> bool:
        """Delete a message, tombstoning its embedding ref in the same transaction.

        ``tombstone_ref`` is tombstoned when the message has no linked ref,
        which covers records upserted before a link that never landed.
        """
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT session_id, embedding_ref FROM messages WHERE message_id = ?",
                (int(message_id),),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return False
            session_id, embedding_ref = str(row[0]), row[1] or tombstone_ref
            if embedding_ref:
                await db.execute(
                    """
                    INSERT OR IGNORE INTO embedding_tombstones (embedding_ref, message_id, session_id, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (str(embedding_ref), int(message_id), session_id, to_iso(utcnow())),
                )
            await db.execute("DELETE FROM messages WHERE message_id = ?", (int(message_id),))
            await db.commit()
        return True

    async def list_session_messages(self, session_id: str) -> List[Message]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE session_id = ?
                ORDER BY message_id ASC
                """,
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]

    async def set_embedding_ref(self, message_id: int, embedding_ref: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE messages SET embedding_ref = ? WHERE message_id = ?",
                (embedding_ref, int(message_id)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def update_confidence(self, message_id: int, confidence: float) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE messages SET confidence = ? WHERE message_id = ?",
                (_clamp(float(confidence), 0.0, 1.0), int(message_id)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def adjust_confidence(self, message_ids: Iterable[int], delta: float) -> int:
        ids = [int(message_id) for message_id in message_ids]
        if not ids:
            return 0
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.executemany(
                """
                UPDATE messages
                SET confidence = MAX(0.0, MIN(1.0, confidence + ?))
                WHERE message_id = ?
                """,
                [(float(delta), message_id) for message_id in ids],
            )
            await db.commit()
            return max(0, int(cursor.rowcount))

    async def decay_confidence(
        self,
        session_id: str,
        *,
        older_than: datetime,
        step: float,
        not_decayed_since: datetime,
        floor: float = 0.0,
    ) -> int:
        """Lower confidence of aged messages, at most once per decay period."""
        if step <= 0:
            return 0
        now = to_iso(utcnow())
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE messages
                SET confidence = MAX(?, confidence - ?), decayed_at = ?
                WHERE session_id = ?
                  AND created_at < ?
                  AND confidence > ?
                  AND (decayed_at IS NULL OR decayed_at < ?)
                """,
                (
                    float(floor),
                    float(step),
                    now,
                    session_id,
                    to_iso(older_than),
                    float(floor),
                    to_iso(not_decayed_since),
                ),
            )
            await db.commit()
            return max(0, int(cursor.rowcount))
