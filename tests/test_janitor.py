from __future__ import annotations

import asyncio
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Set

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from context_engine.errors import SemanticIndexError, StorageError  # noqa: E402
from context_engine.memory.indexer import EmbeddingIndexer  # noqa: E402
from context_engine.memory.janitor import MemoryJanitor  # noqa: E402
from context_engine.memory.locks import SessionLockTable  # noqa: E402
from context_engine.memory.models import Message, embedding_ref_for, utcnow  # noqa: E402
from context_engine.memory.store import MemoryStore  # noqa: E402


class _RecordingIndex:
    """Checks that a message is already gone when its record is deleted."""

    def __init__(self, store: MemoryStore, *, fail: bool = False, delay: float = 0.0) -> None:
        self.store = store
        self.fail = fail
        self.delay = delay
        self.records: Set[str] = set()
        self.deleted: List[str] = []
        self.deleted_while_message_alive: List[str] = []
        self.refs_to_ids: dict[str, int] = {}

    async def upsert(self, embedding_ref, vector, metadata) -> None:  # type: ignore[no-untyped-def]
        self.records.add(embedding_ref)
        self.refs_to_ids[embedding_ref] = int(metadata["message_id"])

    async def query(self, vector, k, min_similarity, *, session_id=None):  # type: ignore[no-untyped-def]
        return []

    async def delete(self, embedding_ref) -> None:  # type: ignore[no-untyped-def]
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise SemanticIndexError("qdrant unreachable")
        message_id = self.refs_to_ids.get(embedding_ref)
        if message_id is not None and await self.store.get(message_id) is not None:
            self.deleted_while_message_alive.append(embedding_ref)
        self.records.discard(embedding_ref)
        self.deleted.append(embedding_ref)


class _FixedEmbedder:
    async def embed(self, text: str) -> List[float]:
        return [1.0, 0.0]


async def _add(store: MemoryStore, index: _RecordingIndex, session_id: str, *, age_days: float, confidence: float = 1.0) -> int:
    message = Message(
        session_id=session_id,
        role="user",
        content=f"aged {age_days} days",
        token_count=5,
        confidence=confidence,
        created_at=utcnow() - timedelta(days=age_days),
    )
    message_id = await store.append(session_id, message)
    ref = embedding_ref_for(message_id)
    await index.upsert(ref, [1.0], {"message_id": message_id, "session_id": session_id})
    await store.set_embedding_ref(message_id, ref)
    return message_id


def test_message_ttl_removes_expired_message_and_record(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    index = _RecordingIndex(store)
    janitor = MemoryJanitor(store, index, SessionLockTable(), message_ttl_days=30, message_cap=10)

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        old_id = await _add(store, index, "s1", age_days=31, confidence=0.9)
        young_id = await _add(store, index, "s1", age_days=10, confidence=0.1)

        report = await janitor.sweep()

        assert report.messages_expired == 1
        assert await store.get(old_id) is None
        assert await store.get(young_id) is not None
        assert embedding_ref_for(old_id) not in index.records
        assert embedding_ref_for(young_id) in index.records
        assert index.deleted_while_message_alive == []

    asyncio.run(scenario())


def test_cap_evicts_older_bucket_before_low_confidence(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    index = _RecordingIndex(store)
    janitor = MemoryJanitor(store, index, SessionLockTable(), message_cap=1)

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        old_id = await _add(store, index, "s1", age_days=31, confidence=0.9)
        young_id = await _add(store, index, "s1", age_days=10, confidence=0.1)

        report = await janitor.sweep()

        assert report.messages_evicted == 1
        assert await store.get(old_id) is None
        assert await store.get(young_id) is not None

    asyncio.run(scenario())


def test_confidence_breaks_ties_inside_the_same_age_bucket(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    index = _RecordingIndex(store)
    janitor = MemoryJanitor(store, index, SessionLockTable(), message_cap=2)

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        confident = await _add(store, index, "s1", age_days=5.1, confidence=0.9)
        doubtful = await _add(store, index, "s1", age_days=5.2, confidence=0.2)
        newest = await _add(store, index, "s1", age_days=1, confidence=0.0)

        await janitor.sweep()

        remaining = [message.id for message in await store.list_session_messages("s1")]
        assert remaining == [confident, newest]
        assert doubtful not in remaining

    asyncio.run(scenario())


def test_eviction_key_orders_by_age_bucket_then_confidence_then_id() -> None:
    janitor = MemoryJanitor(None, None, SessionLockTable(), age_bucket_seconds=86400)
    now = utcnow()

    def _message(message_id: int, age_days: float, confidence: float) -> Message:
        return Message(
            id=message_id,
            session_id="s1",
            role="user",
            content="x",
            token_count=1,
            confidence=confidence,
            created_at=now - timedelta(days=age_days),
        )

    messages = [
        _message(1, 0.5, 0.1),
        _message(2, 3.5, 1.0),
        _message(3, 3.2, 0.4),
        _message(4, 3.9, 0.4),
    ]
    ordered = sorted(messages, key=lambda item: janitor.eviction_key(item, now))

    assert [message.id for message in ordered] == [3, 4, 2, 1]


def test_failed_record_delete_is_retried_by_next_sweep(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    index = _RecordingIndex(store, fail=True)
    janitor = MemoryJanitor(store, index, SessionLockTable(), message_ttl_days=30)

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        old_id = await _add(store, index, "s1", age_days=40)
        ref = embedding_ref_for(old_id)

        first = await janitor.sweep()
        assert first.messages_expired == 1
        assert first.tombstones_pending >= 1
        assert await store.get(old_id) is None
        assert [t.embedding_ref for t in await store.pending_tombstones()] == [ref]

        index.fail = False
        second = await janitor.sweep()
        assert second.tombstones_cleared == 1
        assert await store.pending_tombstones() == []
        assert ref not in index.records

        third = await janitor.sweep()
        assert third.tombstones_cleared == 0
        assert third.messages_expired == 0

    asyncio.run(scenario())


def test_inactive_session_is_deleted_with_everything_it_owns(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    index = _RecordingIndex(store)
    locks = SessionLockTable()
    janitor = MemoryJanitor(store, index, locks, session_ttl_days=7)

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("stale", "narrator")
        await store.ensure_session("active", "narrator")
        stale_ids = [await _add(store, index, "stale", age_days=1) for _ in range(3)]
        active_id = await _add(store, index, "active", age_days=1)
        await store.touch("stale", at=utcnow() - timedelta(days=8))

        report = await janitor.sweep()

        assert report.sessions_expired == 1
        assert await store.get_session("stale") is None
        assert await store.get_session("active") is not None
        for message_id in stale_ids:
            assert embedding_ref_for(message_id) not in index.records
        assert embedding_ref_for(active_id) in index.records
        assert await store.pending_tombstones() == []
        assert "stale" not in locks
        assert index.deleted_while_message_alive == []

    asyncio.run(scenario())


def test_purge_session_removes_messages_and_records(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    index = _RecordingIndex(store)
    janitor = MemoryJanitor(store, index, SessionLockTable())

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        ids = [await _add(store, index, "s1", age_days=0) for _ in range(4)]

        assert await janitor.purge_session("s1") is True
        assert await janitor.purge_session("s1") is False

        assert await store.get_session("s1") is None
        assert index.records == set()
        assert sorted(index.deleted) == sorted(embedding_ref_for(message_id) for message_id in ids)

    asyncio.run(scenario())


def test_cancelled_purge_still_completes_the_cascade(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    index = _RecordingIndex(store, delay=0.02)
    janitor = MemoryJanitor(store, index, SessionLockTable())

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        for _ in range(5):
            await _add(store, index, "s1", age_days=0)

        task = asyncio.create_task(janitor.purge_session("s1"))
        await asyncio.sleep(0.03)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await store.get_session("s1") is None
        assert await store.list_session_messages("s1") == []
        assert index.records == set()
        assert await store.pending_tombstones() == []

    asyncio.run(scenario())


def test_confidence_decays_once_per_bucket(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    index = _RecordingIndex(store)
    janitor = MemoryJanitor(
        store,
        index,
        SessionLockTable(),
        decay_after_days=30,
        decay_step=0.2,
        decay_floor=0.1,
    )

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        old_id = await _add(store, index, "s1", age_days=45, confidence=0.8)
        young_id = await _add(store, index, "s1", age_days=2, confidence=0.8)

        first = await janitor.sweep()
        second = await janitor.sweep()

        assert first.confidence_decayed == 1
        assert second.confidence_decayed == 0
        assert (await store.get(old_id)).confidence == pytest.approx(0.6)  # type: ignore[union-attr]
        assert (await store.get(young_id)).confidence == pytest.approx(0.8)  # type: ignore[union-attr]

    asyncio.run(scenario())


def test_sweep_without_index_keeps_tombstones(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    recorder = _RecordingIndex(store)
    janitor = MemoryJanitor(store, None, SessionLockTable(), message_ttl_days=1)

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        old_id = await _add(store, recorder, "s1", age_days=3)

        report = await janitor.sweep()

        assert report.messages_expired == 1
        assert [t.message_id for t in await store.pending_tombstones()] == [old_id]

    asyncio.run(scenario())


class _LinkFailingStore(MemoryStore):
    async def set_embedding_ref(self, message_id: int, embedding_ref: str) -> bool:
        raise StorageError("database is locked")


def test_record_left_by_failed_link_is_removed_with_its_message(tmp_path: Path) -> None:
    store = _LinkFailingStore(tmp_path / "memory.db")
    index = _RecordingIndex(store, fail=True)
    locks = SessionLockTable()
    indexer = EmbeddingIndexer(store, index, _FixedEmbedder(), locks)
    janitor = MemoryJanitor(store, index, locks, message_cap=1)

    async def scenario() -> None:
        await store.init()
        await store.ensure_session("s1", "narrator")
        old = Message(session_id="s1", role="user", content="unlinked", token_count=2, created_at=utcnow() - timedelta(days=3))
        old = old.with_id(await store.append("s1", old))
        await store.append("s1", Message(session_id="s1", role="user", content="newer", token_count=2))

        with pytest.raises(StorageError):
            await indexer.index_message(old)
        ref = embedding_ref_for(int(old.id))  # type: ignore[arg-type]
        assert ref in index.records
        assert (await store.get(int(old.id))).embedding_ref is None  # type: ignore[arg-type,union-attr]

        first = await janitor.sweep()
        assert first.messages_evicted == 1
        assert await store.get(int(old.id)) is None  # type: ignore[arg-type]
        assert [t.embedding_ref for t in await store.pending_tombstones()] == [ref]

        index.fail = False
        await janitor.sweep()
        assert index.records == set()
        assert await store.pending_tombstones() == []
        assert index.deleted_while_message_alive == []

    asyncio.run(scenario())
