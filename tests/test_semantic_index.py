from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from context_engine.errors import SemanticIndexError  # noqa: E402
from context_engine.memory.models import embedding_ref_for  # noqa: E402
from context_engine.memory.semantic_index import QdrantSemanticIndex  # noqa: E402


def _index() -> QdrantSemanticIndex:
    return QdrantSemanticIndex(":memory:", "test_messages")


def test_query_is_scoped_to_session_and_filtered_by_similarity() -> None:
    index = _index()

    async def scenario() -> None:
        await index.init()
        try:
            await index.upsert(embedding_ref_for(1), [1.0, 0.0], {"message_id": 1, "session_id": "s1"})
            await index.upsert(embedding_ref_for(2), [0.9, 0.1], {"message_id": 2, "session_id": "s1"})
            await index.upsert(embedding_ref_for(3), [0.0, 1.0], {"message_id": 3, "session_id": "s1"})
            await index.upsert(embedding_ref_for(4), [1.0, 0.0], {"message_id": 4, "session_id": "s2"})

            matches = await index.query([1.0, 0.0], 5, 0.8, session_id="s1")

            assert [message_id for message_id, _ in matches] == [1, 2]
            assert matches[0][1] == pytest.approx(1.0, abs=1e-4)
            assert matches[1][1] >= 0.8
        finally:
            await index.close()

    asyncio.run(scenario())


def test_query_before_any_upsert_returns_nothing() -> None:
    index = _index()

    async def scenario() -> None:
        await index.init()
        try:
            assert await index.query([1.0, 0.0], 3, 0.5) == []
            assert await index.get(embedding_ref_for(1)) is None
            await index.delete(embedding_ref_for(1))
        finally:
            await index.close()

    asyncio.run(scenario())


def test_delete_and_get_by_ref() -> None:
    index = _index()
    ref = embedding_ref_for(7)

    async def scenario() -> None:
        await index.init()
        try:
            await index.upsert(ref, [0.6, 0.8], {"message_id": 7, "session_id": "s1", "role": "user"})

            record = await index.get(ref)
            assert record is not None
            assert record.id == ref
            assert record.message_id == 7
            assert record.metadata["role"] == "user"
            assert len(record.vector) == 2

            await index.delete(ref)
            assert await index.get(ref) is None
            # Deleting twice is harmless.
            await index.delete(ref)
        finally:
            await index.close()

    asyncio.run(scenario())


def test_upsert_validates_input() -> None:
    index = QdrantSemanticIndex(":memory:", "test_messages", dimensions=2)

    async def scenario() -> None:
        await index.init()
        try:
            with pytest.raises(ValueError):
                await index.upsert(embedding_ref_for(1), [1.0, 0.0], {"session_id": "s1"})
            with pytest.raises(SemanticIndexError):
                await index.upsert(embedding_ref_for(1), [], {"message_id": 1})
            with pytest.raises(SemanticIndexError):
                await index.upsert(embedding_ref_for(1), [1.0, 0.0, 0.0], {"message_id": 1})
        finally:
            await index.close()

    asyncio.run(scenario())


def test_zero_k_short_circuits() -> None:
    index = _index()

    async def scenario() -> None:
        try:
            assert await index.query([1.0], 0, 0.5) == []
        finally:
            await index.close()

    asyncio.run(scenario())
