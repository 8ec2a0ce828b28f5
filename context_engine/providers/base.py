from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Mapping

import aiohttp

from ..errors import ProviderPermanentError, ProviderTransientError

TRANSIENT_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})


class HttpChatClient:
    """Shared aiohttp plumbing for chat backends.

    A request is sent exactly once: retrying and falling back is the
    router's job, so failures are only classified here.
    """

    provider_id = "http"

    def __init__(self, *, timeout_seconds: float, temperature: float, max_output_tokens: int) -> None:
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self.temperature = float(temperature)
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _post_json(self, url: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        try:
            async with self._session.post(url, json=payload, headers=self._headers()) as response:
                text = await response.text()
                status = response.status
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            raise ProviderTransientError(self.provider_id, "request timed out") from exc
        except aiohttp.ClientError as exc:
            raise ProviderTransientError(self.provider_id, f"network error: {exc}") from exc

        if status in TRANSIENT_STATUSES:
            raise ProviderTransientError(self.provider_id, f"retriable error {status}: {text[:300]}")
        if status != 200:
            raise ProviderPermanentError(self.provider_id, f"error {status}: {text[:300]}")
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderPermanentError(self.provider_id, "response is not valid JSON") from exc
        if not isinstance(parsed, dict):
            raise ProviderPermanentError(self.provider_id, "response is not a JSON object")
        return parsed

    @staticmethod
    def _sanitize_messages(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        mapped: List[Dict[str, str]] = []
        for msg in messages:
            role = str(msg.get("role", "")).strip().lower() or "user"
            if role not in {"system", "user", "assistant"}:
                role = "user"
            content = str(msg.get("content", "")).strip()
            if not content:
                continue
            mapped.append({"role": role, "content": content})
        return mapped

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        raise NotImplementedError
