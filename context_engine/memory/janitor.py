from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from ..errors import ContextEngineError, SemanticIndexError
from .locks import SessionLockTable
from .models import Message, SemanticIndex, Session, embedding_ref_for, utcnow

logger = logging.getLogger("context_engine")


@dataclass(slots=True)
class SweepReport:
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    sessions_scanned: int = 0
    sessions_expired: int = 0
    sessions_failed: int = 0
    messages_expired: int = 0
    messages_evicted: int = 0
    records_deleted: int = 0
    tombstones_cleared: int = 0
    tombstones_pending: int = 0
    confidence_decayed: int = 0


class MemoryJanitor:
    """Idempotent eviction sweep over the session store and the semantic index.

    Every deletion removes the message first and its embedding record second.
    The store records a tombstone together with the message deletion, so a
    record whose removal failed is retried by the next sweep. With an index
    configured, messages without a linked ref are tombstoned under their
    deterministic ref too.
    """

    def __init__(
        self,
        store: Any,
        index: SemanticIndex | None,
        locks: SessionLockTable,
        *,
        message_ttl_days: float = 0,
        session_ttl_days: float = 0,
        message_cap: int = 0,
        age_bucket_seconds: int = 86400,
        decay_after_days: float = 0,
        decay_step: float = 0.0,
        decay_floor: float = 0.0,
        sweep_interval_seconds: float = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.index = index
        self.locks = locks
        self.message_ttl = timedelta(days=message_ttl_days) if message_ttl_days > 0 else None
        self.session_ttl = timedelta(days=session_ttl_days) if session_ttl_days > 0 else None
        self.message_cap = max(0, int(message_cap))
        self.age_bucket_seconds = max(1, int(age_bucket_seconds))
        self.decay_after = timedelta(days=decay_after_days) if decay_after_days > 0 else None
        self.decay_step = max(0.0, float(decay_step))
        self.decay_floor = max(0.0, float(decay_floor))
        self.sweep_interval_seconds = max(1.0, float(sweep_interval_seconds))
        self.clock = clock
        self._task: Optional[asyncio.Task[None]] = None

    def eviction_key(self, message: Message, now: datetime) -> tuple[int, float, int]:
        """Older age bucket first; confidence only breaks ties inside a bucket."""
        age_seconds = max(0.0, (now - message.created_at).total_seconds())
        bucket = int(age_seconds // self.age_bucket_seconds)
        return (-bucket, float(message.confidence), int(message.id or 0))

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        await self._drain_tombstones(report)

        for session in await self.store.list_sessions():
            # Cancellation is honoured here, between sessions.
            await asyncio.sleep(0)
            report.sessions_scanned += 1
            try:
                await self._uninterrupted(lambda: self._sweep_session(session, report))
            except ContextEngineError as exc:
                report.sessions_failed += 1
                logger.warning("[janitor] session=%s sweep failed: %s", session.id, exc)

        report.finished_at = utcnow()
        return report

    async def purge_session(self, session_id: str) -> bool:
        report = SweepReport()

        async def _purge() -> bool:
            async with self.locks.hold(session_id):
                existed = await self.store.get_session(session_id) is not None
                if existed:
                    await self._cascade_session(session_id, report)
                else:
                    await self._drain_tombstones(report, session_id=session_id)
            return existed

        existed = await self._uninterrupted(_purge)
        self.locks.evict(session_id)
        if existed:
            logger.info(
                "[janitor] purged session=%s records_deleted=%s tombstones_pending=%s",
                session_id,
                report.records_deleted,
                report.tombstones_pending,
            )
        return existed

    @staticmethod
    async def _uninterrupted(factory: Callable[[], Awaitable[Any]]) -> Any:
        # A cascade that started runs to completion even if the caller is cancelled.
        task = asyncio.ensure_future(factory())
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                await task
            raise

    async def _sweep_session(self, session: Session, report: SweepReport) -> None:
        expired_session = False
        async with self.locks.hold(session.id):
            now = self.clock()
            current = await self.store.get_session(session.id)
            if current is None:
                return
            if self.session_ttl is not None and now - current.last_active_at > self.session_ttl:
                await self._cascade_session(current.id, report)
                report.sessions_expired += 1
                expired_session = True
            else:
                await self._prune_messages(current.id, now, report)
                await self._decay(current.id, now, report)
        if expired_session:
            self.locks.evict(session.id)
            logger.info("[janitor] session=%s expired after inactivity", session.id)

    async def _prune_messages(self, session_id: str, now: datetime, report: SweepReport) -> None:
        messages = await self.store.list_session_messages(session_id)
        remaining: List[Message] = []
        for message in messages:
            if self.message_ttl is not None and now - message.created_at > self.message_ttl:
                await self._delete_message(message, report)
                report.messages_expired += 1
            else:
                remaining.append(message)

        excess = len(remaining) - self.message_cap
        if self.message_cap <= 0 or excess <= 0:
            return
        victims = sorted(remaining, key=lambda item: self.eviction_key(item, now))[:excess]
        for message in victims:
            await self._delete_message(message, report)
            report.messages_evicted += 1

    async def _decay(self, session_id: str, now: datetime, report: SweepReport) -> None:
        if self.decay_after is None or self.decay_step <= 0:
            return
        report.confidence_decayed += await self.store.decay_confidence(
            session_id,
            older_than=now - self.decay_after,
            step=self.decay_step,
            not_decayed_since=now - timedelta(seconds=self.age_bucket_seconds),
            floor=self.decay_floor,
        )

    async def _cascade_session(self, session_id: str, report: SweepReport) -> None:
        for message in await self.store.list_session_messages(session_id):
            await self._delete_message(message, report)
        await self.store.delete_session(session_id)
        await self._drain_tombstones(report, session_id=session_id)

    async def _delete_message(self, message: Message, report: SweepReport) -> None:
        if message.id is None:
            raise ValueError("Only persisted messages can be deleted")
        embedding_ref = message.embedding_ref
        if not embedding_ref and self.index is not None:
            # A record can exist without a linked ref when linking failed after the upsert.
            embedding_ref = embedding_ref_for(message.id)
        await self.store.delete(message.id, tombstone_ref=embedding_ref)
        if embedding_ref:
            await self._delete_record(embedding_ref, report)

    async def _delete_record(self, embedding_ref: str, report: SweepReport) -> bool:
        if self.index is None:
            report.tombstones_pending += 1
            return False
        try:
            await self.index.delete(embedding_ref)
        except SemanticIndexError as exc:
            report.tombstones_pending += 1
            logger.warning("[janitor] index delete failed for %s, kept tombstone: %s", embedding_ref, exc)
            return False
        await self.store.clear_tombstone(embedding_ref)
        report.records_deleted += 1
        return True

    async def _drain_tombstones(self, report: SweepReport, *, session_id: str | None = None) -> None:
        while True:
            tombstones = await self.store.pending_tombstones(session_id=session_id, limit=200)
            if not tombstones:
                return
            cleared = 0
            for tombstone in tombstones:
                if await self._delete_record(tombstone.embedding_ref, report):
                    report.tombstones_cleared += 1
                    cleared += 1
            if cleared < len(tombstones):
                # The index is failing; leave the rest for the next sweep.
                return

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="context-engine-janitor")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                report = await self.sweep()
                logger.info(
                    "[janitor] sweep sessions=%s expired=%s messages_expired=%s evicted=%s "
                    "records_deleted=%s tombstones_pending=%s decayed=%s",
                    report.sessions_scanned,
                    report.sessions_expired,
                    report.messages_expired,
                    report.messages_evicted,
                    report.records_deleted,
                    report.tombstones_pending,
                    report.confidence_decayed,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[janitor] sweep failed")
