from __future__ import annotations

from typing import Any, Dict, List

from ..errors import ProviderPermanentError
from .base import HttpChatClient

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}


class OpenAICompatibleClient(HttpChatClient):
    """Client for any backend speaking the OpenAI chat/completions dialect."""

    def __init__(
        self,
        provider_id: str,
        *,
        api_key: str,
        model: str,
        timeout_seconds: float,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "",
        extra_headers: Dict[str, str] | None = None,
    ) -> None:
        super().__init__(
            timeout_seconds=timeout_seconds,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        self.provider_id = provider_id
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or DEFAULT_BASE_URLS.get(provider_id, "")).rstrip("/")
        if not self.base_url:
            raise ValueError(f"{provider_id} needs an explicit base URL")
        self.extra_headers = dict(extra_headers or {})

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        headers.update(self.extra_headers)
        return headers

    def _extract_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ProviderPermanentError(self.provider_id, "no choices returned")
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str) and content.strip():
            return content.strip()
        finish_reason = choices[0].get("finish_reason")
        if finish_reason:
            raise ProviderPermanentError(self.provider_id, f"empty response (finish_reason={finish_reason})")
        raise ProviderPermanentError(self.provider_id, "empty response")

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        mapped_messages = self._sanitize_messages(messages)
        if not mapped_messages:
            raise ProviderPermanentError(self.provider_id, "no messages to send")
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": mapped_messages,
            "temperature": float(self.temperature if temperature is None else temperature),
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            payload["max_tokens"] = int(selected_tokens)
        data = await self._post_json(self._endpoint(), payload)
        return self._extract_text(data)
