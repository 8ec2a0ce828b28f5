from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Sequence

import asyncpg

from ..errors import StorageError
from .models import Message, Session, Tombstone, utcnow
from .storage.utils import _clamp, _row_to_message, _row_to_session

logger = logging.getLogger("context_engine")

_MESSAGE_COLUMNS = "message_id, session_id, role, content, token_count, confidence, embedding_ref, created_at"
_SESSION_COLUMNS = (
    "session_id, character_id, created_at, last_active_at, total_token_count, summary, summary_updated_at"
)

_STORAGE_FAILURES = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class PostgresMessageWindow:
    def __init__(self, store: "PostgresSessionStore", session_id: str, limit: int) -> None:
        self.store = store
        self.session_id = session_id
        self.limit = max(0, int(limit))

    async def _fetch(self) -> List[Message]:
        if self.limit <= 0:
            return []
        pool = await self.store._ensure_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_MESSAGE_COLUMNS}
                    FROM messages
                    WHERE session_id = $1
                    ORDER BY message_id DESC
                    LIMIT $2
                    """,
                    self.session_id,
                    self.limit,
                )
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"Postgres memory store failure: {exc}") from exc
        return [_row_to_message(row) for row in reversed(rows)]

    async def __aiter__(self) -> AsyncIterator[Message]:
        for message in await self._fetch():
            yield message

    async def collect(self) -> List[Message]:
        return await self._fetch()


class PostgresSessionStore:
    """Postgres-backed session store implementing the same API as MemoryStore."""

    SCHEMA_VERSION = 2
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=1,
                    max_size=6,
                    command_timeout=30.0,
                )
            except _STORAGE_FAILURES as exc:
                raise StorageError(f"Postgres memory store unreachable: {exc}") from exc
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        await self._execute("SELECT 1")

    async def _execute(self, query: str, *args: object) -> str:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.execute(query, *args)
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"Postgres memory store failure: {exc}") from exc

    async def _fetch(self, query: str, *args: object) -> List[asyncpg.Record]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"Postgres memory store failure: {exc}") from exc

    async def _fetchrow(self, query: str, *args: object) -> Optional[asyncpg.Record]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"Postgres memory store failure: {exc}") from exc

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags such as "UPDATE 3" or "DELETE 0".
        try:
            return int(str(status).rsplit(" ", 1)[-1])
        except ValueError:
            return 0

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        version = await self._get_schema_version(conn)
                        if version > self.SCHEMA_VERSION:
                            raise RuntimeError(
                                f"Postgres memory schema version {version} is newer than supported "
                                f"{self.SCHEMA_VERSION}. Upgrade before starting."
                            )
                        await self._create_schema(conn)
                        await self._migrate_schema(conn, version)
                        if version != self.SCHEMA_VERSION:
                            await self._set_schema_version(conn, self.SCHEMA_VERSION)
            except _STORAGE_FAILURES as exc:
                raise StorageError(f"Postgres memory store failure: {exc}") from exc
            self._initialized = True

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM memory_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO memory_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _migrate_schema(self, conn: "asyncpg.Connection", from_version: int) -> None:
        # v2: session summaries and decay bookkeeping (additive).
        await conn.execute(
            """
            ALTER TABLE sessions
            ADD COLUMN IF NOT EXISTS summary TEXT NOT NULL DEFAULT '';

            ALTER TABLE sessions
            ADD COLUMN IF NOT EXISTS summary_updated_at TIMESTAMPTZ;

            ALTER TABLE messages
            ADD COLUMN IF NOT EXISTS decayed_at TIMESTAMPTZ;
            """
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                character_id TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                last_active_at TIMESTAMPTZ NOT NULL,
                total_token_count BIGINT NOT NULL DEFAULT 0,
                summary TEXT NOT NULL DEFAULT '',
                summary_updated_at TIMESTAMPTZ
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id BIGSERIAL PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content TEXT NOT NULL,
                token_count INTEGER NOT NULL,
                confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0,
                embedding_ref TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                decayed_at TIMESTAMPTZ
            );

            CREATE TABLE IF NOT EXISTS embedding_tombstones (
                embedding_ref TEXT PRIMARY KEY,
                message_id BIGINT NOT NULL,
                session_id TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_last_active ON sessions(last_active_at);
            CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, message_id DESC);
            CREATE INDEX IF NOT EXISTS idx_messages_session_created ON messages(session_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_tombstones_session ON embedding_tombstones(session_id);
            """
        )

    async def ensure_session(self, session_id: str, character_id: str) -> Session:
        now = utcnow()
        await self._execute(
            """
            INSERT INTO sessions (session_id, character_id, created_at, last_active_at, total_token_count)
            VALUES ($1, $2, $3, $3, 0)
            ON CONFLICT (session_id) DO NOTHING
            """,
            session_id,
            character_id,
            now,
        )
        session = await self.get_session(session_id)
        if session is None:
            raise StorageError(f"Session {session_id!r} vanished right after creation")
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = await self._fetchrow(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = $1", session_id)
        return _row_to_session(row) if row is not None else None

    async def list_sessions(self) -> List[Session]:
        rows = await self._fetch(
            f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY last_active_at ASC, session_id ASC"
        )
        return [_row_to_session(row) for row in rows]

    async def set_session_character(self, session_id: str, character_id: str) -> bool:
        status = await self._execute(
            "UPDATE sessions SET character_id = $1, last_active_at = $2 WHERE session_id = $3",
            character_id,
            utcnow(),
            session_id,
        )
        return self._affected(status) > 0

    async def touch(self, session_id: str, *, at: datetime | None = None) -> None:
        await self._execute(
            "UPDATE sessions SET last_active_at = $1 WHERE session_id = $2",
            at or utcnow(),
            session_id,
        )

    async def set_session_summary(self, session_id: str, summary: str) -> None:
        cleaned = summary.strip()
        if not cleaned:
            return
        await self._execute(
            "UPDATE sessions SET summary = $1, summary_updated_at = $2 WHERE session_id = $3",
            cleaned,
            utcnow(),
            session_id,
        )

    async def delete_session(self, session_id: str) -> int:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO embedding_tombstones (embedding_ref, message_id, session_id)
                        SELECT embedding_ref, message_id, session_id
                        FROM messages
                        WHERE session_id = $1 AND embedding_ref IS NOT NULL
                        ON CONFLICT (embedding_ref) DO NOTHING
                        """,
                        session_id,
                    )
                    status = await conn.execute("DELETE FROM messages WHERE session_id = $1", session_id)
                    await conn.execute("DELETE FROM sessions WHERE session_id = $1", session_id)
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"Postgres memory store failure: {exc}") from exc
        return self._affected(status)

    async def append(self, session_id: str, message: Message) -> int:
        message_ids = await self.append_exchange(session_id, [message])
        return message_ids[0]

    async def append_exchange(self, session_id: str, messages: Sequence[Message]) -> List[int]:
        for message in messages:
            if message.session_id != session_id:
                raise ValueError(f"Message belongs to session {message.session_id!r}, not {session_id!r}")
        if not messages:
            return []
        pool = await self._ensure_pool()
        message_ids: List[int] = []
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    status = await conn.execute(
                        """
                        UPDATE sessions
                        SET total_token_count = total_token_count + $1, last_active_at = $2
                        WHERE session_id = $3
                        """,
                        sum(int(message.token_count) for message in messages),
                        utcnow(),
                        session_id,
                    )
                    if self._affected(status) <= 0:
                        raise StorageError(f"Unknown session {session_id!r}")
                    for message in messages:
                        message_id = await conn.fetchval(
                            """
                            INSERT INTO messages (session_id, role, content, token_count, confidence, embedding_ref, created_at)
                            VALUES ($1, $2, $3, $4, $5, $6, $7)
                            RETURNING message_id
                            """,
                            session_id,
                            message.role,
                            message.content,
                            int(message.token_count),
                            _clamp(float(message.confidence), 0.0, 1.0),
                            message.embedding_ref,
                            message.created_at,
                        )
                        message_ids.append(int(message_id))
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"Postgres memory store failure: {exc}") from exc
        return message_ids

    def recent(self, session_id: str, limit: int) -> PostgresMessageWindow:
        return PostgresMessageWindow(self, session_id, limit)

    async def get(self, message_id: int) -> Optional[Message]:
        row = await self._fetchrow(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id = $1",
            int(message_id),
        )
        return _row_to_message(row) if row is not None else None

    async def delete(self, message_id: int, *, tombstone_ref: str | None = None) -> bool:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        "SELECT session_id, embedding_ref FROM messages WHERE message_id = $1 FOR UPDATE",
                        int(message_id),
                    )
                    if row is None:
                        return False
                    embedding_ref = row["embedding_ref"] or tombstone_ref
                    if embedding_ref:
                        await conn.execute(
                            """
                            INSERT INTO embedding_tombstones (embedding_ref, message_id, session_id)
                            VALUES ($1, $2, $3)
                            ON CONFLICT (embedding_ref) DO NOTHING
                            """,
                            str(embedding_ref),
                            int(message_id),
                            str(row["session_id"]),
                        )
                    await conn.execute("DELETE FROM messages WHERE message_id = $1", int(message_id))
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"Postgres memory store failure: {exc}") from exc
        return True

    async def list_session_messages(self, session_id: str) -> List[Message]:
        rows = await self._fetch(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE session_id = $1 ORDER BY message_id ASC",
            session_id,
        )
        return [_row_to_message(row) for row in rows]

    async def set_embedding_ref(self, message_id: int, embedding_ref: str) -> bool:
        status = await self._execute(
            "UPDATE messages SET embedding_ref = $1 WHERE message_id = $2",
            embedding_ref,
            int(message_id),
        )
        return self._affected(status) > 0

    async def update_confidence(self, message_id: int, confidence: float) -> bool:
        status = await self._execute(
            "UPDATE messages SET confidence = $1 WHERE message_id = $2",
            _clamp(float(confidence), 0.0, 1.0),
            int(message_id),
        )
        return self._affected(status) > 0

    async def adjust_confidence(self, message_ids: Iterable[int], delta: float) -> int:
        ids = [int(message_id) for message_id in message_ids]
        if not ids:
            return 0
        status = await self._execute(
            """
            UPDATE messages
            SET confidence = GREATEST(0.0, LEAST(1.0, confidence + $1))
            WHERE message_id = ANY($2::bigint[])
            """,
            float(delta),
            ids,
        )
        return self._affected(status)

    async def decay_confidence(
        self,
        session_id: str,
        *,
        older_than: datetime,
        step: float,
        not_decayed_since: datetime,
        floor: float = 0.0,
    ) -> int:
        if step <= 0:
            return 0
        status = await self._execute(
            """
            UPDATE messages
            SET confidence = GREATEST($1, confidence - $2), decayed_at = NOW()
            WHERE session_id = $3
              AND created_at < $4
              AND confidence > $1
              AND (decayed_at IS NULL OR decayed_at < $5)
            """,
            float(floor),
            float(step),
            session_id,
            older_than,
            not_decayed_since,
        )
        return self._affected(status)

    async def add_tombstone(self, embedding_ref: str, message_id: int, session_id: str) -> None:
        await self._execute(
            """
            INSERT INTO embedding_tombstones (embedding_ref, message_id, session_id)
            VALUES ($1, $2, $3)
            ON CONFLICT (embedding_ref) DO NOTHING
            """,
            embedding_ref,
            int(message_id),
            session_id,
        )

    async def pending_tombstones(self, session_id: str | None = None, limit: int = 500) -> List[Tombstone]:
        if session_id is None:
            rows = await self._fetch(
                """
                SELECT embedding_ref, message_id, session_id, created_at
                FROM embedding_tombstones
                ORDER BY created_at ASC, embedding_ref ASC
                LIMIT $1
                """,
                max(1, int(limit)),
            )
        else:
            rows = await self._fetch(
                """
                SELECT embedding_ref, message_id, session_id, created_at
                FROM embedding_tombstones
                WHERE session_id = $1
                ORDER BY created_at ASC, embedding_ref ASC
                LIMIT $2
                """,
                session_id,
                max(1, int(limit)),
            )
        return [
            Tombstone(
                embedding_ref=str(row["embedding_ref"]),
                message_id=int(row["message_id"]),
                session_id=str(row["session_id"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def clear_tombstone(self, embedding_ref: str) -> None:
        await self._execute("DELETE FROM embedding_tombstones WHERE embedding_ref = $1", embedding_ref)
