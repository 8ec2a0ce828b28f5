from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

MESSAGE_ROLES = frozenset({"user", "assistant", "system"})

_EMBEDDING_REF_NAMESPACE = "context-engine:message:"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(raw: object) -> datetime:
    if isinstance(raw, datetime):
        return raw if raw.tzinfo is not None else raw.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(raw).strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def embedding_ref_for(message_id: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{_EMBEDDING_REF_NAMESPACE}{int(message_id)}"))


@dataclass(slots=True)
class Session:
    id: str
    character_id: str
    created_at: datetime
    last_active_at: datetime
    total_token_count: int = 0
    summary: str = ""
    summary_updated_at: Optional[datetime] = None


@dataclass(slots=True)
class Message:
    session_id: str
    role: str
    content: str
    token_count: int
    confidence: float = 1.0
    embedding_ref: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def __post_init__(self) -> None:
        role = str(self.role or "").strip().lower()
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Unsupported message role: {self.role!r}")
        self.role = role
        if int(self.token_count) < 0:
            raise ValueError("token_count must be >= 0")

    def with_id(self, message_id: int) -> "Message":
        return replace(self, id=int(message_id))


@dataclass(slots=True)
class EmbeddingRecord:
    id: str
    message_id: int
    vector: List[float]
    metadata: Dict[str, Any]


@dataclass(slots=True)
class Tombstone:
    embedding_ref: str
    message_id: int
    session_id: str
    created_at: datetime


@runtime_checkable
class MessageWindow(Protocol):
    def __aiter__(self) -> AsyncIterator[Message]:
        ...

    async def collect(self) -> List[Message]:
        ...


@runtime_checkable
class SessionStore(Protocol):
    backend_name: str

    async def append(self, session_id: str, message: Message) -> int:
        ...

    async def append_exchange(self, session_id: str, messages: Sequence[Message]) -> List[int]:
        ...

    def recent(self, session_id: str, limit: int) -> MessageWindow:
        ...

    async def get(self, message_id: int) -> Optional[Message]:
        ...

    async def delete(self, message_id: int, *, tombstone_ref: str | None = None) -> bool:
        ...

    async def touch(self, session_id: str) -> None:
        ...

    async def ping(self) -> None:
        ...


@runtime_checkable
class SemanticIndex(Protocol):
    async def upsert(self, embedding_ref: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        ...

    async def query(
        self,
        vector: Sequence[float],
        k: int,
        min_similarity: float,
        *,
        session_id: str | None = None,
    ) -> List[Tuple[int, float]]:
        ...

    async def delete(self, embedding_ref: str) -> None:
        ...


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...
