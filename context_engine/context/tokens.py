from __future__ import annotations

import math
import re
from typing import Any, Protocol

_WORD_RE = re.compile(r"\S+")


class TokenCounter(Protocol):
    name: str

    def count(self, text: str) -> int:
        ...


class EstimateTokenCounter:
    """Roughly 4 characters per token, never below the word count."""

    name = "estimate"

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        self.chars_per_token = float(chars_per_token)

    def count(self, text: str) -> int:
        cleaned = str(text or "")
        if not cleaned.strip():
            return 0
        by_chars = math.ceil(len(cleaned) / self.chars_per_token)
        return max(by_chars, len(_WORD_RE.findall(cleaned)))


class TiktokenCounter:
    name = "tiktoken"

    def __init__(self, model: str = "gpt-4o-mini") -> None:
        import tiktoken

        self.model = model
        try:
            self._encoding: Any = tiktoken.encoding_for_model(model)
        except KeyError:
            self._encoding = tiktoken.get_encoding("cl100k_base")

    def count(self, text: str) -> int:
        cleaned = str(text or "")
        if not cleaned:
            return 0
        return len(self._encoding.encode(cleaned, disallowed_special=()))


def build_token_counter(name: str, *, model: str = "") -> TokenCounter:
    selected = (name or "estimate").strip().lower()
    if selected == "estimate":
        return EstimateTokenCounter()
    if selected == "tiktoken":
        return TiktokenCounter(model or "gpt-4o-mini")
    raise ValueError("TOKEN_COUNTER must be 'estimate' or 'tiktoken'")
