from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import aiohttp

from ..errors import EmbeddingError


class _HttpEmbeddingClient:
    backend_name = "http"

    def __init__(self, *, model: str, timeout_seconds: float) -> None:
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Embedding model cannot be empty")
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None
        try:
            async with self._session.post(url, json=payload, headers=self._headers()) as response:
                text = await response.text()
                if response.status != 200:
                    raise EmbeddingError(f"{self.backend_name} embedding error {response.status}: {text[:300]}")
        except asyncio.CancelledError:
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            raise EmbeddingError(f"{self.backend_name} embedding request failed: {exc}") from exc
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise EmbeddingError(f"{self.backend_name} embedding response is not JSON") from exc
        if not isinstance(parsed, dict):
            raise EmbeddingError(f"{self.backend_name} embedding response is not an object")
        return parsed

    @staticmethod
    def _as_vector(raw: Any) -> List[float]:
        if not isinstance(raw, list) or not raw:
            raise EmbeddingError("Embedding response carried no vector")
        try:
            return [float(value) for value in raw]
        except (TypeError, ValueError) as exc:
            raise EmbeddingError("Embedding vector holds non-numeric values") from exc


class OllamaEmbeddingClient(_HttpEmbeddingClient):
    backend_name = "ollama"

    def __init__(self, *, base_url: str, model: str, timeout_seconds: float = 20) -> None:
        super().__init__(model=model, timeout_seconds=timeout_seconds)
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")

    async def embed(self, text: str) -> List[float]:
        data = await self._post_json(f"{self.base_url}/api/embed", {"model": self.model, "input": text})
        embeddings = data.get("embeddings")
        if isinstance(embeddings, list) and embeddings:
            return self._as_vector(embeddings[0])
        # Older servers answer /api/embeddings style payloads.
        return self._as_vector(data.get("embedding"))


class OpenAIEmbeddingClient(_HttpEmbeddingClient):
    backend_name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 20,
    ) -> None:
        super().__init__(model=model, timeout_seconds=timeout_seconds)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def embed(self, text: str) -> List[float]:
        data = await self._post_json(f"{self.base_url}/embeddings", {"model": self.model, "input": text})
        items = data.get("data")
        if not isinstance(items, list) or not items or not isinstance(items[0], dict):
            raise EmbeddingError("openai embedding response carried no data")
        return self._as_vector(items[0].get("embedding"))
