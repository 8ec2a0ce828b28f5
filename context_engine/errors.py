from __future__ import annotations

from typing import Dict, Mapping


class ContextEngineError(Exception):
    """Base class for every error raised by the engine."""

    user_message = "Something went wrong while answering."


class StorageError(ContextEngineError):
    user_message = "Storage is unavailable right now."


class SemanticIndexError(ContextEngineError):
    """Semantic index unreachable or slow. Never surfaced to callers of handle_turn."""


class EmbeddingError(SemanticIndexError):
    """The embedding backend could not turn text into a vector."""


class ProviderError(ContextEngineError):
    def __init__(self, provider_id: str, message: str) -> None:
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id


class ProviderTransientError(ProviderError):
    """Timeouts, rate limits, 5xx and network failures."""


class ProviderPermanentError(ProviderError):
    """Malformed requests, auth failures and unusable responses."""


class AllProvidersExhausted(ContextEngineError):
    user_message = "All AI backends are unavailable right now."

    def __init__(self, errors: Mapping[str, Exception], skipped: tuple[str, ...] = ()) -> None:
        self.errors: Dict[str, Exception] = dict(errors)
        self.skipped = tuple(skipped)
        parts = [f"{provider_id}={type(exc).__name__}: {exc}" for provider_id, exc in self.errors.items()]
        if self.skipped:
            parts.append(f"skipped={','.join(self.skipped)}")
        super().__init__("No provider succeeded (" + "; ".join(parts or ["no providers configured"]) + ")")


class BudgetExceededError(ContextEngineError):
    user_message = "Your message is too large for the configured context budget."

    def __init__(self, required_tokens: int, budget: int) -> None:
        super().__init__(f"Minimal context needs {required_tokens} tokens, budget is {budget}")
        self.required_tokens = required_tokens
        self.budget = budget


_CALLER_VISIBLE = (StorageError, AllProvidersExhausted, BudgetExceededError)


def user_facing_message(exc: BaseException) -> str:
    if isinstance(exc, _CALLER_VISIBLE):
        return exc.user_message
    return ContextEngineError.user_message
