from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from ..errors import SemanticIndexError
from .models import EmbeddingRecord

logger = logging.getLogger("context_engine")


class QdrantSemanticIndex:
    """Nearest-neighbour index over message embeddings.

    Point ids are the messages' embedding refs; the payload keeps a
    non-owning ``message_id`` back-reference used to resolve matches.
    """

    def __init__(
        self,
        url: str,
        collection: str,
        *,
        api_key: str = "",
        dimensions: int = 0,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.url = url.strip()
        self.collection = collection.strip() or "context_engine_messages"
        self.dimensions = max(0, int(dimensions))
        if self.url == ":memory:":
            self.client = AsyncQdrantClient(location=":memory:")
        else:
            self.client = AsyncQdrantClient(
                url=self.url,
                api_key=api_key or None,
                timeout=max(1, int(timeout_seconds)),
            )
        self._collection_ready = False
        self._collection_lock = asyncio.Lock()

    async def init(self) -> None:
        if self.dimensions > 0:
            await self._ensure_collection(self.dimensions)

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception:
            logger.warning("[index] qdrant client close failed", exc_info=True)

    async def _collection_exists(self) -> bool:
        response = await self.client.get_collections()
        return any(item.name == self.collection for item in response.collections)

    async def _ensure_collection(self, dimensions: int) -> None:
        if self._collection_ready:
            return
        async with self._collection_lock:
            if self._collection_ready:
                return
            try:
                if not await self._collection_exists():
                    await self.client.create_collection(
                        collection_name=self.collection,
                        vectors_config=VectorParams(size=int(dimensions), distance=Distance.COSINE),
                    )
                    logger.info("[index] created collection %s (dim=%s)", self.collection, dimensions)
            except Exception as exc:
                raise SemanticIndexError(f"Qdrant collection setup failed: {exc}") from exc
            self._collection_ready = True

    async def upsert(self, embedding_ref: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        values = [float(value) for value in vector]
        if not values:
            raise SemanticIndexError("Refusing to index an empty vector")
        if "message_id" not in metadata:
            raise ValueError("Embedding metadata must carry message_id")
        await self._ensure_collection(self.dimensions or len(values))
        try:
            await self.client.upsert(
                collection_name=self.collection,
                points=[PointStruct(id=embedding_ref, vector=values, payload=dict(metadata))],
            )
        except Exception as exc:
            raise SemanticIndexError(f"Qdrant upsert failed: {exc}") from exc

    async def query(
        self,
        vector: Sequence[float],
        k: int,
        min_similarity: float,
        *,
        session_id: str | None = None,
    ) -> List[Tuple[int, float]]:
        if k <= 0:
            return []
        query_filter: Optional[Filter] = None
        if session_id is not None:
            query_filter = Filter(must=[FieldCondition(key="session_id", match=MatchValue(value=session_id))])
        try:
            if not self._collection_ready and not await self._collection_exists():
                return []
            response = await self.client.query_points(
                collection_name=self.collection,
                query=[float(value) for value in vector],
                query_filter=query_filter,
                limit=int(k),
                score_threshold=float(min_similarity),
                with_payload=True,
            )
        except Exception as exc:
            raise SemanticIndexError(f"Qdrant query failed: {exc}") from exc

        matches: List[Tuple[int, float]] = []
        for point in response.points:
            payload = point.payload or {}
            score = float(point.score)
            # score_threshold is inclusive on some server versions only.
            if score < min_similarity or "message_id" not in payload:
                continue
            matches.append((int(payload["message_id"]), score))
        matches.sort(key=lambda item: (-item[1], item[0]))
        return matches

    async def delete(self, embedding_ref: str) -> None:
        try:
            if not self._collection_ready and not await self._collection_exists():
                return
            await self.client.delete(
                collection_name=self.collection,
                points_selector=PointIdsList(points=[embedding_ref]),
            )
        except Exception as exc:
            raise SemanticIndexError(f"Qdrant delete failed: {exc}") from exc

    async def get(self, embedding_ref: str) -> Optional[EmbeddingRecord]:
        try:
            if not self._collection_ready and not await self._collection_exists():
                return None
            points = await self.client.retrieve(
                collection_name=self.collection,
                ids=[embedding_ref],
                with_payload=True,
                with_vectors=True,
            )
        except Exception as exc:
            raise SemanticIndexError(f"Qdrant retrieve failed: {exc}") from exc
        if not points:
            return None
        point = points[0]
        payload = dict(point.payload or {})
        vector = point.vector if isinstance(point.vector, list) else []
        return EmbeddingRecord(
            id=str(point.id),
            message_id=int(payload.get("message_id", 0)),
            vector=[float(value) for value in vector],
            metadata=payload,
        )
