from __future__ import annotations

from typing import Any

from ..config import MEMORY_BACKENDS, Settings
from .store import MemoryStore


def build_session_store(settings: Settings) -> Any:
    """Session store for the configured backend; Postgres connects lazily on init."""
    backend = settings.memory_backend
    if backend not in MEMORY_BACKENDS:
        raise ValueError(f"Unsupported memory backend {backend!r}")
    if backend == "sqlite":
        return MemoryStore(settings.sqlite_path)
    if not settings.memory_postgres_dsn:
        raise ValueError("A Postgres DSN is required for the postgres memory backend")

    from .postgres_store import PostgresSessionStore

    return PostgresSessionStore(settings.memory_postgres_dsn)
