from .embeddings import OllamaEmbeddingClient, OpenAIEmbeddingClient
from .gemini_client import GeminiClient
from .ollama_chat_client import OllamaChatClient
from .openai_compat_client import OpenAICompatibleClient
from .router import (
    ProviderPolicy,
    ProviderResponse,
    ProviderRouter,
    ProviderState,
    ProviderStateTable,
    ProviderStatus,
)

__all__ = [
    "GeminiClient",
    "OllamaChatClient",
    "OllamaEmbeddingClient",
    "OpenAICompatibleClient",
    "OpenAIEmbeddingClient",
    "ProviderPolicy",
    "ProviderResponse",
    "ProviderRouter",
    "ProviderState",
    "ProviderStateTable",
    "ProviderStatus",
]
