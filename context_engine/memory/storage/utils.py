from __future__ import annotations

import os
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Mapping

import aiosqlite

from ...errors import StorageError
from ..models import Message, Session, parse_iso


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA foreign_keys=ON")
            timeout_ms = _sqlite_busy_timeout_ms()
            if timeout_ms > 0:
                await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
            yield db
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"SQLite memory store failure: {exc}") from exc


def _row_to_message(row: Mapping[str, object]) -> Message:
    return Message(
        id=int(row["message_id"]),
        session_id=str(row["session_id"]),
        role=str(row["role"]),
        content=str(row["content"]),
        token_count=int(row["token_count"]),
        confidence=float(row["confidence"]),
        embedding_ref=str(row["embedding_ref"]) if row["embedding_ref"] else None,
        created_at=parse_iso(row["created_at"]),
    )


def _row_to_session(row: Mapping[str, object]) -> Session:
    summary_updated = row["summary_updated_at"]
    return Session(
        id=str(row["session_id"]),
        character_id=str(row["character_id"]),
        created_at=parse_iso(row["created_at"]),
        last_active_at=parse_iso(row["last_active_at"]),
        total_token_count=int(row["total_token_count"] or 0),
        summary=str(row["summary"] or ""),
        summary_updated_at=parse_iso(summary_updated) if summary_updated else None,
    )
