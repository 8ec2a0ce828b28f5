from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Set

from ..errors import BudgetExceededError, SemanticIndexError
from ..memory.models import Embedder, Message, SemanticIndex, SessionStore, utcnow

logger = logging.getLogger("context_engine")


@dataclass(slots=True)
class PendingTurn:
    session_id: str
    content: str
    token_count: int
    vector: Optional[List[float]] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class RecalledMessage:
    message: Message
    similarity: float


@dataclass(slots=True)
class AssembledContext:
    """Bounded context for one turn: recalled block, recent window, then the turn."""

    recalled: List[RecalledMessage]
    recent: List[Message]
    turn: PendingTurn
    total_tokens: int
    budget: int
    semantic_queried: bool = False
    dropped_recalled: int = 0
    dropped_recent: int = 0

    def message_ids(self) -> List[int]:
        ids = [item.message.id for item in self.recalled]
        ids.extend(message.id for message in self.recent)
        return [int(message_id) for message_id in ids if message_id is not None]


class ContextAssembler:
    def __init__(
        self,
        store: SessionStore,
        index: SemanticIndex | None,
        embedder: Embedder | None = None,
        *,
        budget: int,
        window: int,
        top_k: int,
        min_similarity: float,
        index_timeout_seconds: float = 2.0,
        low_confidence_threshold: float = 0.5,
    ) -> None:
        if budget <= 0:
            raise ValueError("budget must be > 0")
        if window < 1:
            raise ValueError("window must be >= 1")
        self.store = store
        self.index = index
        self.embedder = embedder
        self.budget = int(budget)
        self.window = int(window)
        self.top_k = max(0, int(top_k))
        self.min_similarity = float(min_similarity)
        self.index_timeout_seconds = max(0.05, float(index_timeout_seconds))
        self.low_confidence_threshold = float(low_confidence_threshold)

    async def assemble(self, turn: PendingTurn) -> AssembledContext:
        recent = await self.store.recent(turn.session_id, self.window).collect()
        recent_tokens = sum(message.token_count for message in recent)

        minimal = turn.token_count + (recent[-1].token_count if recent else 0)
        if minimal > self.budget:
            raise BudgetExceededError(minimal, self.budget)

        recalled: List[RecalledMessage] = []
        queried = False
        if self.top_k > 0 and self.index is not None and recent_tokens + turn.token_count < self.budget:
            queried = True
            exclude = {int(message.id) for message in recent if message.id is not None}
            recalled = await self._recall(turn, exclude)

        total = recent_tokens + turn.token_count + sum(item.message.token_count for item in recalled)

        dropped_recalled = 0
        if total > self.budget and recalled:
            # Low-confidence matches go first, then the least similar.
            drop_order = sorted(
                recalled,
                key=lambda item: (
                    item.message.confidence >= self.low_confidence_threshold,
                    item.similarity,
                    -int(item.message.id or 0),
                ),
            )
            for item in drop_order:
                if total <= self.budget:
                    break
                recalled.remove(item)
                total -= item.message.token_count
                dropped_recalled += 1

        dropped_recent = 0
        while total > self.budget and len(recent) > 1:
            oldest = recent.pop(0)
            total -= oldest.token_count
            dropped_recent += 1

        if total > self.budget:
            raise BudgetExceededError(total, self.budget)

        if dropped_recalled or dropped_recent:
            logger.debug(
                "[context] session=%s truncated recalled=%s recent=%s total=%s budget=%s",
                turn.session_id,
                dropped_recalled,
                dropped_recent,
                total,
                self.budget,
            )

        return AssembledContext(
            recalled=recalled,
            recent=recent,
            turn=turn,
            total_tokens=total,
            budget=self.budget,
            semantic_queried=queried,
            dropped_recalled=dropped_recalled,
            dropped_recent=dropped_recent,
        )

    async def _recall(self, turn: PendingTurn, exclude: Set[int]) -> List[RecalledMessage]:
        try:
            matches = await asyncio.wait_for(self._lookup(turn, len(exclude)), timeout=self.index_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "[index] session=%s semantic lookup timed out after %.2fs; continuing without recall",
                turn.session_id,
                self.index_timeout_seconds,
            )
            return []
        except SemanticIndexError as exc:
            logger.warning("[index] session=%s semantic lookup failed: %s", turn.session_id, exc)
            return []

        recalled: List[RecalledMessage] = []
        for message_id, similarity in matches:
            if message_id in exclude or similarity < self.min_similarity:
                continue
            message = await self.store.get(message_id)
            # The index may briefly lag behind deletions.
            if message is None or message.session_id != turn.session_id:
                continue
            recalled.append(RecalledMessage(message=message, similarity=float(similarity)))
            exclude.add(message_id)
            if len(recalled) >= self.top_k:
                break
        recalled.sort(key=lambda item: (-item.similarity, int(item.message.id or 0)))
        return recalled

    async def _lookup(self, turn: PendingTurn, excluded_count: int) -> Sequence[tuple[int, float]]:
        if self.index is None:
            return []
        vector = turn.vector
        if vector is None:
            if self.embedder is None:
                return []
            vector = await self.embedder.embed(turn.content)
            turn.vector = vector
        return await self.index.query(
            vector,
            self.top_k + excluded_count,
            self.min_similarity,
            session_id=turn.session_id,
        )
