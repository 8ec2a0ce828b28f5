from __future__ import annotations

import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from context_engine.config import ProviderSettings, Settings  # noqa: E402

_ENV_KEYS = (
    "PROVIDER_ORDER",
    "GEMINI_API_KEY",
    "GEMINI_MODEL",
    "GEMINI_CHAT_MODEL",
    "OLLAMA_MODEL",
    "OPENAI_API_KEY",
    "DEEPSEEK_API_KEY",
    "CONTEXT_TOKEN_BUDGET",
    "RECENT_WINDOW_MESSAGES",
    "MAX_RECENT_MESSAGES",
    "SEMANTIC_INDEX_ENABLED",
    "EMBEDDING_BACKEND",
    "EMBEDDING_API_KEY",
    "MEMORY_MESSAGE_TTL_DAYS",
    "MEMORY_SESSION_TTL_DAYS",
    "MEMORY_SESSION_MESSAGE_CAP",
    "TOKEN_COUNTER",
    "MEMORY_BACKEND",
    "MEMORY_POSTGRES_DSN",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_validate_with_gemini_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "real-key")

    settings = Settings.from_env()
    settings.validate()

    assert settings.provider_order == ("gemini", "ollama")
    assert settings.providers["gemini"].model == "gemini-2.5-flash"
    assert settings.providers["ollama"].requires_api_key is False
    assert settings.token_counter == "estimate"


def test_provider_order_is_normalized_and_deduplicated(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVIDER_ORDER", " Ollama, deepseek ,ollama,, ")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-1")

    settings = Settings.from_env()
    settings.validate()

    assert settings.provider_order == ("ollama", "deepseek")
    assert settings.providers["deepseek"].base_url == "https://api.deepseek.com/v1"


def test_unknown_provider_in_order_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVIDER_ORDER", "ollama,claude")

    with pytest.raises(ValueError, match="unknown provider 'claude'"):
        Settings.from_env().validate()


def test_missing_or_placeholder_api_key_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVIDER_ORDER", "openai")
    with pytest.raises(ValueError, match="OPENAI_API_KEY is required"):
        Settings.from_env().validate()

    monkeypatch.setenv("OPENAI_API_KEY", "changeme")
    with pytest.raises(ValueError, match="placeholder"):
        Settings.from_env().validate()


def test_model_alias_and_quoted_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_CHAT_MODEL", '"gemini-2.0-flash"')
    monkeypatch.setenv("MAX_RECENT_MESSAGES", "7")

    settings = Settings.from_env()

    assert settings.providers["gemini"].model == "gemini-2.0-flash"
    assert settings.recent_window_messages == 7


def test_invalid_numbers_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONTEXT_TOKEN_BUDGET", "lots")

    assert Settings.from_env().context_token_budget == 6000


def test_session_ttl_shorter_than_message_ttl_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "real-key")
    monkeypatch.setenv("MEMORY_MESSAGE_TTL_DAYS", "30")
    monkeypatch.setenv("MEMORY_SESSION_TTL_DAYS", "7")

    with pytest.raises(ValueError, match="MEMORY_SESSION_TTL_DAYS"):
        Settings.from_env().validate()


def test_message_cap_below_recent_window_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "real-key")
    monkeypatch.setenv("RECENT_WINDOW_MESSAGES", "20")
    monkeypatch.setenv("MEMORY_SESSION_MESSAGE_CAP", "10")

    with pytest.raises(ValueError, match="MEMORY_SESSION_MESSAGE_CAP"):
        Settings.from_env().validate()


def test_openai_embeddings_need_a_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "real-key")
    monkeypatch.setenv("EMBEDDING_BACKEND", "openai")

    settings = Settings.from_env()
    assert settings.embedding_model == "text-embedding-3-small"
    with pytest.raises(ValueError, match="EMBEDDING_API_KEY"):
        settings.validate()

    monkeypatch.setenv("SEMANTIC_INDEX_ENABLED", "0")
    Settings.from_env().validate()


def test_provider_failure_thresholds_must_be_ordered() -> None:
    settings = ProviderSettings.from_env("ollama")
    settings.degraded_after = 5
    settings.unavailable_after = 2

    with pytest.raises(ValueError, match="OLLAMA_UNAVAILABLE_AFTER"):
        settings.validate()


def test_memory_backend_is_validated_with_the_rest(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "real-key")
    assert Settings.from_env().memory_backend == "sqlite"

    monkeypatch.setenv("MEMORY_BACKEND", "mongo")
    with pytest.raises(ValueError, match="MEMORY_BACKEND"):
        Settings.from_env().validate()

    monkeypatch.setenv("MEMORY_BACKEND", "postgres")
    with pytest.raises(ValueError, match="MEMORY_POSTGRES_DSN"):
        Settings.from_env().validate()

    monkeypatch.setenv("MEMORY_POSTGRES_DSN", "postgresql://memory@127.0.0.1/memory")
    settings = Settings.from_env()
    settings.validate()
    assert settings.memory_postgres_dsn == "postgresql://memory@127.0.0.1/memory"
