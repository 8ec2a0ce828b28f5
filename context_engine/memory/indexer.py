from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Sequence, Set, Tuple

from ..errors import SemanticIndexError
from .locks import SessionLockTable
from .models import Embedder, Message, SemanticIndex, embedding_ref_for, to_iso

logger = logging.getLogger("context_engine")


class EmbeddingIndexer:
    """Background worker that embeds persisted messages into the semantic index.

    Each queued message is handled by its own task. The vector is computed and
    upserted outside the session lock, at most ``concurrency`` at a time.
    Linking the ref to its message happens under the lock, so a session busy
    with a long turn only delays its own links. If the message was deleted in
    the meantime the fresh record is removed again, tombstoned first so a
    failed removal is finished by the janitor.
    """

    def __init__(
        self,
        store: Any,
        index: SemanticIndex,
        embedder: Embedder,
        locks: SessionLockTable,
        *,
        queue_size: int = 256,
        concurrency: int = 4,
    ) -> None:
        self.store = store
        self.index = index
        self.embedder = embedder
        self.locks = locks
        self.queue: asyncio.Queue[Tuple[Message, Optional[List[float]]]] = asyncio.Queue(
            maxsize=max(1, int(queue_size))
        )
        self._slots = asyncio.Semaphore(max(1, int(concurrency)))
        self._task: Optional[asyncio.Task[None]] = None
        self._inflight: Set[asyncio.Task[None]] = set()

    def submit(self, message: Message, vector: Sequence[float] | None = None) -> bool:
        if message.id is None:
            raise ValueError("Only persisted messages can be indexed")
        if not message.content.strip():
            return False
        try:
            self.queue.put_nowait((message, list(vector) if vector is not None else None))
        except asyncio.QueueFull:
            logger.warning(
                "[index] queue full, message_id=%s stays without embedding",
                message.id,
            )
            return False
        return True

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._worker(), name="context-engine-indexer")

    async def stop(self) -> None:
        tasks = list(self._inflight)
        if self._task is not None:
            tasks.append(self._task)
        self._task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def drain(self) -> None:
        await self.queue.join()

    async def _worker(self) -> None:
        while True:
            await self._slots.acquire()
            try:
                message, vector = await self.queue.get()
            except asyncio.CancelledError:
                self._slots.release()
                raise
            task = asyncio.create_task(self._process(message, vector), name=f"context-engine-index-{message.id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _process(self, message: Message, vector: Optional[List[float]]) -> None:
        try:
            try:
                embedding_ref = await self._upsert(message, vector)
            finally:
                self._slots.release()
            await self._link(message, embedding_ref)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[index] embedding failed for message_id=%s", message.id)
        finally:
            self.queue.task_done()

    async def index_message(self, message: Message, vector: Sequence[float] | None = None) -> bool:
        """Embed one message; returns True when its ref was linked."""
        embedding_ref = await self._upsert(message, vector)
        return await self._link(message, embedding_ref)

    async def _upsert(self, message: Message, vector: Sequence[float] | None) -> str:
        if message.id is None:
            raise ValueError("Only persisted messages can be indexed")
        if vector is None:
            vector = await self.embedder.embed(message.content)
        embedding_ref = embedding_ref_for(message.id)
        await self.index.upsert(
            embedding_ref,
            vector,
            {
                "message_id": int(message.id),
                "session_id": message.session_id,
                "role": message.role,
                "created_at": to_iso(message.created_at),
            },
        )
        return embedding_ref

    async def _link(self, message: Message, embedding_ref: str) -> bool:
        message_id = int(message.id or 0)
        async with self.locks.hold(message.session_id):
            if await self.store.set_embedding_ref(message_id, embedding_ref):
                return True
            await self.store.add_tombstone(embedding_ref, message_id, message.session_id)

        try:
            await self.index.delete(embedding_ref)
        except SemanticIndexError as exc:
            logger.warning("[index] orphan record %s left for the janitor: %s", embedding_ref, exc)
            return False
        await self.store.clear_tombstone(embedding_ref)
        logger.debug("[index] message_id=%s vanished before linking; record removed", message_id)
        return False
