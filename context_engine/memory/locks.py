from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict


@dataclass(slots=True)
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class SessionLockTable:
    """Keyed per-session locks, sized to the sessions currently in use.

    An entry lives while at least one task holds or waits for it and is
    dropped afterwards, so the table does not grow with every session ever
    seen.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(session_id)
        if entry is None:
            entry = _LockEntry()
            self._entries[session_id] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders <= 0 and self._entries.get(session_id) is entry:
                del self._entries[session_id]

    def locked(self, session_id: str) -> bool:
        entry = self._entries.get(session_id)
        return entry is not None and entry.lock.locked()

    def evict(self, session_id: str) -> None:
        # Waiters keep their own reference to the entry; only idle entries go.
        entry = self._entries.get(session_id)
        if entry is not None and entry.holders <= 0:
            del self._entries[session_id]
