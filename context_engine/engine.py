from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, NamedTuple, Optional, Sequence

from .context.assembler import AssembledContext, ContextAssembler, PendingTurn
from .context.tokens import TokenCounter
from .errors import SemanticIndexError, StorageError
from .memory.indexer import EmbeddingIndexer
from .memory.janitor import MemoryJanitor
from .memory.locks import SessionLockTable
from .memory.models import Message, Session
from .memory.storage.utils import _clamp
from .prompts.dialogue import build_context_messages, build_summary_messages
from .providers.router import ProviderRouter

logger = logging.getLogger("context_engine")


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    context_budget: int
    recalled_messages: int = 0
    provider_id: str = ""

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class TurnResult(NamedTuple):
    assistant_text: str
    token_usage: TokenUsage


class ConversationEngine:
    """Single entry point for turns: assemble context, dispatch, persist."""

    def __init__(
        self,
        *,
        store: Any,
        router: ProviderRouter,
        assembler: ContextAssembler,
        token_counter: TokenCounter,
        locks: SessionLockTable,
        index: Any = None,
        indexer: EmbeddingIndexer | None = None,
        janitor: MemoryJanitor | None = None,
        janitor_enabled: bool = False,
        system_prompt_for: Callable[[str], str] | None = None,
        recall_reinforcement: float = 0.0,
        summary_window: int = 24,
        preferred_order: Sequence[str] | None = None,
        closeables: Sequence[Any] = (),
    ) -> None:
        self.store = store
        self.router = router
        self.assembler = assembler
        self.token_counter = token_counter
        self.locks = locks
        self.index = index
        self.indexer = indexer
        self.janitor = janitor or MemoryJanitor(store, index, locks)
        self.janitor_enabled = janitor_enabled
        self.system_prompt_for = system_prompt_for
        self.recall_reinforcement = max(0.0, float(recall_reinforcement))
        self.summary_window = max(2, int(summary_window))
        self.preferred_order = tuple(preferred_order) if preferred_order is not None else None
        self.closeables = tuple(closeables)

    async def start(self) -> None:
        await self.store.init()
        if self.index is not None:
            try:
                await self.index.init()
            except SemanticIndexError as exc:
                logger.warning("[index] semantic index not ready, recall degrades until it is: %s", exc)
        if self.indexer is not None:
            self.indexer.start()
        if self.janitor_enabled:
            self.janitor.start()
        logger.info("[engine] started (store=%s)", getattr(self.store, "backend_name", "?"))

    async def close(self) -> None:
        await self.janitor.stop()
        if self.indexer is not None:
            await self.indexer.stop()
        for client in self.closeables:
            try:
                await client.close()
            except Exception:
                logger.warning("[engine] failed to close %s", type(client).__name__, exc_info=True)
        if self.index is not None:
            await self.index.close()
        await self.store.close()

    def _system_prompt(self, character_id: str) -> str:
        if self.system_prompt_for is None:
            return ""
        return str(self.system_prompt_for(character_id) or "")

    async def handle_turn(self, session_id: str, character_id: str, user_text: str) -> TurnResult:
        text = (user_text or "").strip()
        if not text:
            raise ValueError("user_text cannot be empty")

        async with self.locks.hold(session_id):
            session = await self.store.ensure_session(session_id, character_id)
            if session.character_id != character_id:
                await self.store.set_session_character(session_id, character_id)

            turn = PendingTurn(session_id=session_id, content=text, token_count=self.token_counter.count(text))
            context = await self.assembler.assemble(turn)
            messages = build_context_messages(
                context,
                system_prompt=self._system_prompt(character_id),
                summary=session.summary,
            )
            response = await self.router.send(messages, self.preferred_order)
            reply = response.text.strip()
            completion_tokens = self.token_counter.count(reply)

            user_message = Message(
                session_id=session_id,
                role="user",
                content=text,
                token_count=turn.token_count,
                created_at=turn.created_at,
            )
            assistant_message = Message(
                session_id=session_id,
                role="assistant",
                content=reply,
                token_count=completion_tokens,
            )
            user_id, assistant_id = await self.store.append_exchange(session_id, [user_message, assistant_message])
            user_message = user_message.with_id(user_id)
            assistant_message = assistant_message.with_id(assistant_id)

            await self._reinforce(context)

            if self.indexer is not None:
                self.indexer.submit(user_message, turn.vector)
                self.indexer.submit(assistant_message)

        logger.info(
            "[turn] session=%s provider=%s prompt_tokens=%s completion_tokens=%s recalled=%s dropped=%s/%s",
            session_id,
            response.provider_id,
            context.total_tokens,
            completion_tokens,
            len(context.recalled),
            context.dropped_recalled,
            context.dropped_recent,
        )
        return TurnResult(
            assistant_text=reply,
            token_usage=TokenUsage(
                prompt_tokens=context.total_tokens,
                completion_tokens=completion_tokens,
                context_budget=context.budget,
                recalled_messages=len(context.recalled),
                provider_id=response.provider_id,
            ),
        )

    async def _reinforce(self, context: AssembledContext) -> None:
        if self.recall_reinforcement <= 0 or not context.recalled:
            return
        ids = [int(item.message.id) for item in context.recalled if item.message.id is not None]
        try:
            await self.store.adjust_confidence(ids, self.recall_reinforcement)
        except StorageError as exc:
            # The exchange is already persisted at this point.
            logger.warning("[turn] session=%s recall reinforcement skipped: %s", context.turn.session_id, exc)

    async def switch_character(self, session_id: str, character_id: str) -> Session:
        async with self.locks.hold(session_id):
            session = await self.store.ensure_session(session_id, character_id)
            if session.character_id != character_id:
                await self.store.set_session_character(session_id, character_id)
                session = await self.store.get_session(session_id)
        if session is None:
            raise StorageError(f"Session {session_id!r} vanished during character switch")
        logger.info("[engine] session=%s now uses character=%s", session_id, character_id)
        return session

    async def purge_session(self, session_id: str) -> bool:
        return await self.janitor.purge_session(session_id)

    async def summarize_session(self, session_id: str) -> str:
        async with self.locks.hold(session_id):
            session = await self.store.get_session(session_id)
            if session is None:
                return ""
            history = await self.store.recent(session_id, self.summary_window).collect()
            if not history:
                return session.summary
            messages = build_summary_messages(history, previous_summary=session.summary)
            response = await self.router.send(messages, self.preferred_order)
            summary = response.text.strip()
            await self.store.set_session_summary(session_id, summary)
        logger.info("[engine] session=%s summary refreshed via %s", session_id, response.provider_id)
        return summary

    async def record_feedback(self, message_id: int, delta: float) -> Optional[float]:
        message = await self.store.get(message_id)
        if message is None:
            return None
        async with self.locks.hold(message.session_id):
            current = await self.store.get(message_id)
            if current is None:
                return None
            confidence = _clamp(current.confidence + float(delta), 0.0, 1.0)
            await self.store.update_confidence(message_id, confidence)
        return confidence

    async def status(self) -> Dict[str, str]:
        """Store reachability plus the health of every configured provider."""
        try:
            await self.store.ping()
            store_status = "ok"
        except StorageError as exc:
            logger.warning("[engine] store ping failed: %s", exc)
            store_status = "unreachable"
        report = {"store": store_status}
        for provider_id, state in self.router.states.snapshot().items():
            report[f"provider:{provider_id}"] = state.status.value
        return report

    async def drain(self) -> None:
        """Wait until queued embeddings are written."""
        if self.indexer is not None:
            await self.indexer.drain()
