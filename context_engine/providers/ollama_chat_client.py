from __future__ import annotations

import re
from typing import Any, Dict, List

from ..errors import ProviderPermanentError
from .base import HttpChatClient


class OllamaChatClient(HttpChatClient):
    provider_id = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 45,
        temperature: float = 0.7,
        max_output_tokens: int = 0,
    ) -> None:
        super().__init__(
            timeout_seconds=timeout_seconds,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Ollama model cannot be empty")

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    @staticmethod
    def _strip_reasoning_blocks(text: str) -> str:
        cleaned = str(text or "").strip()
        # Some reasoning-capable models may emit hidden-thought tags.
        cleaned = re.sub(r"<think>.*?</think>\s*", "", cleaned, flags=re.IGNORECASE | re.DOTALL).strip()
        return cleaned

    def _extract_message_text(self, data: Dict[str, Any]) -> str:
        message = data.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
        response_text = data.get("response")
        if isinstance(response_text, str) and response_text.strip():
            return response_text
        raise ProviderPermanentError(self.provider_id, "empty message content")

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        mapped_messages = self._sanitize_messages(messages)
        if not mapped_messages:
            raise ProviderPermanentError(self.provider_id, "no messages to send")

        options: Dict[str, Any] = {
            "temperature": float(self.temperature if temperature is None else temperature),
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            options["num_predict"] = int(selected_tokens)

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": mapped_messages,
            "stream": False,
            "think": False,
            "options": options,
        }
        data = await self._post_json(self._endpoint(), payload)
        cleaned = self._strip_reasoning_blocks(self._extract_message_text(data))
        if not cleaned:
            raise ProviderPermanentError(self.provider_id, "response held only reasoning blocks")
        return cleaned
