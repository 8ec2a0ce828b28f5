from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv


load_dotenv()

KNOWN_PROVIDERS = ("gemini", "ollama", "openai", "deepseek", "openrouter")
MEMORY_BACKENDS = ("sqlite", "postgres")

_PROVIDER_DEFAULTS: Dict[str, Tuple[str, str]] = {
    "gemini": ("https://generativelanguage.googleapis.com", "gemini-2.5-flash"),
    "ollama": ("http://127.0.0.1:11434", "llama3.1"),
    "openai": ("https://api.openai.com/v1", "gpt-4o-mini"),
    "deepseek": ("https://api.deepseek.com/v1", "deepseek-chat"),
    "openrouter": ("https://openrouter.ai/api/v1", "openai/gpt-4o-mini"),
}

_PLACEHOLDER_KEYS = {"put_your_api_key_here", "changeme", "your-api-key"}


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
        value = value[1:-1].strip()
    return value if value else default


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = _env_str(name, default)
    items = [chunk.strip().lower() for chunk in raw.split(",")]
    return tuple(dict.fromkeys(item for item in items if item))


@dataclass(slots=True)
class ProviderSettings:
    provider_id: str
    api_key: str
    base_url: str
    model: str
    timeout_seconds: float
    temperature: float
    max_output_tokens: int
    degraded_after: int
    unavailable_after: int
    backoff_base_seconds: float
    backoff_max_seconds: float

    @property
    def requires_api_key(self) -> bool:
        return self.provider_id != "ollama"

    @classmethod
    def from_env(cls, provider_id: str) -> "ProviderSettings":
        prefix = provider_id.upper()
        base_url, model = _PROVIDER_DEFAULTS[provider_id]
        model_aliases: tuple[str, ...] = (f"{prefix}_CHAT_MODEL",)
        return cls(
            provider_id=provider_id,
            api_key=_env_str(f"{prefix}_API_KEY", ""),
            base_url=_env_str(f"{prefix}_BASE_URL", base_url),
            model=_env_str(f"{prefix}_MODEL", model, aliases=model_aliases),
            timeout_seconds=_env_float(f"{prefix}_TIMEOUT_SECONDS", 45.0),
            temperature=_env_float(f"{prefix}_TEMPERATURE", 0.7),
            max_output_tokens=_env_int(f"{prefix}_MAX_OUTPUT_TOKENS", 0),
            degraded_after=_env_int(f"{prefix}_DEGRADED_AFTER", 2),
            unavailable_after=_env_int(f"{prefix}_UNAVAILABLE_AFTER", 4),
            backoff_base_seconds=_env_float(f"{prefix}_BACKOFF_BASE_SECONDS", 5.0),
            backoff_max_seconds=_env_float(f"{prefix}_BACKOFF_MAX_SECONDS", 300.0),
        )

    def validate(self) -> None:
        prefix = self.provider_id.upper()
        if self.requires_api_key:
            if not self.api_key:
                raise ValueError(f"{prefix}_API_KEY is required when {self.provider_id} is in PROVIDER_ORDER")
            if self.api_key.lower() in _PLACEHOLDER_KEYS:
                raise ValueError(f"{prefix}_API_KEY is still placeholder")
        if not self.model:
            raise ValueError(f"{prefix}_MODEL cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError(f"{prefix}_TIMEOUT_SECONDS must be > 0")
        if self.max_output_tokens < 0:
            raise ValueError(f"{prefix}_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")
        if self.degraded_after < 1:
            raise ValueError(f"{prefix}_DEGRADED_AFTER must be >= 1")
        if self.unavailable_after < self.degraded_after:
            raise ValueError(f"{prefix}_UNAVAILABLE_AFTER must be >= {prefix}_DEGRADED_AFTER")
        if self.backoff_base_seconds <= 0:
            raise ValueError(f"{prefix}_BACKOFF_BASE_SECONDS must be > 0")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError(f"{prefix}_BACKOFF_MAX_SECONDS must be >= {prefix}_BACKOFF_BASE_SECONDS")


@dataclass(slots=True)
class Settings:
    sqlite_path: Path
    memory_backend: str
    memory_postgres_dsn: str
    default_character_id: str
    system_core_prompt: str

    provider_order: Tuple[str, ...]
    providers: Dict[str, ProviderSettings]

    context_token_budget: int
    recent_window_messages: int
    semantic_top_k: int
    semantic_min_similarity: float
    semantic_timeout_seconds: float
    low_confidence_threshold: float
    recall_reinforcement: float
    token_counter: str
    token_counter_model: str

    semantic_index_enabled: bool
    qdrant_url: str
    qdrant_api_key: str
    qdrant_collection: str
    embedding_backend: str
    embedding_base_url: str
    embedding_api_key: str
    embedding_model: str
    embedding_dimensions: int
    embedding_timeout_seconds: float
    embedding_queue_size: int

    janitor_enabled: bool
    janitor_sweep_interval_seconds: float
    janitor_age_bucket_seconds: int
    memory_message_ttl_days: float
    memory_session_ttl_days: float
    memory_session_message_cap: int
    memory_confidence_decay_after_days: float
    memory_confidence_decay_step: float
    memory_confidence_decay_floor: float

    summary_window_messages: int
    log_level: str = field(default="INFO")

    @classmethod
    def from_env(cls) -> "Settings":
        provider_order = _env_list("PROVIDER_ORDER", "gemini,ollama")
        embedding_backend = _env_str("EMBEDDING_BACKEND", "ollama").lower()
        default_embedding_model = "text-embedding-3-small" if embedding_backend == "openai" else "nomic-embed-text"
        default_embedding_url = (
            "https://api.openai.com/v1" if embedding_backend == "openai" else _PROVIDER_DEFAULTS["ollama"][0]
        )
        return cls(
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/context_engine.db")).expanduser(),
            memory_backend=_env_str("MEMORY_BACKEND", "sqlite").lower(),
            memory_postgres_dsn=_env_str("MEMORY_POSTGRES_DSN", ""),
            default_character_id=_env_str("DEFAULT_CHARACTER_ID", "default"),
            system_core_prompt=_env_str("SYSTEM_CORE_PROMPT", "", aliases=("DEFAULT_SYSTEM_PROMPT",)),
            provider_order=provider_order,
            providers={
                provider_id: ProviderSettings.from_env(provider_id)
                for provider_id in provider_order
                if provider_id in KNOWN_PROVIDERS
            },
            context_token_budget=_env_int("CONTEXT_TOKEN_BUDGET", 6000),
            recent_window_messages=_env_int("RECENT_WINDOW_MESSAGES", 12, aliases=("MAX_RECENT_MESSAGES",)),
            semantic_top_k=_env_int("SEMANTIC_TOP_K", 5),
            semantic_min_similarity=_env_float("SEMANTIC_MIN_SIMILARITY", 0.8),
            semantic_timeout_seconds=_env_float("SEMANTIC_TIMEOUT_SECONDS", 2.0),
            low_confidence_threshold=_env_float("MEMORY_LOW_CONFIDENCE_THRESHOLD", 0.5),
            recall_reinforcement=_env_float("MEMORY_RECALL_REINFORCEMENT", 0.05),
            token_counter=_env_str("TOKEN_COUNTER", "estimate").lower(),
            token_counter_model=_env_str("TOKEN_COUNTER_MODEL", "gpt-4o-mini"),
            semantic_index_enabled=_env_bool("SEMANTIC_INDEX_ENABLED", True),
            qdrant_url=_env_str("QDRANT_URL", "http://127.0.0.1:6333"),
            qdrant_api_key=_env_str("QDRANT_API_KEY", ""),
            qdrant_collection=_env_str("QDRANT_COLLECTION", "context_engine_messages"),
            embedding_backend=embedding_backend,
            embedding_base_url=_env_str("EMBEDDING_BASE_URL", default_embedding_url),
            embedding_api_key=_env_str("EMBEDDING_API_KEY", "", aliases=("OPENAI_API_KEY",)),
            embedding_model=_env_str(
                "EMBEDDING_MODEL",
                default_embedding_model,
                aliases=("OPENAI_EMBEDDING_MODEL",),
            ),
            embedding_dimensions=_env_int("EMBEDDING_DIMENSIONS", 0),
            embedding_timeout_seconds=_env_float("EMBEDDING_TIMEOUT_SECONDS", 20.0),
            embedding_queue_size=_env_int("EMBEDDING_QUEUE_SIZE", 256),
            janitor_enabled=_env_bool("JANITOR_ENABLED", True),
            janitor_sweep_interval_seconds=_env_float("JANITOR_SWEEP_INTERVAL_SECONDS", 3600.0),
            janitor_age_bucket_seconds=_env_int("JANITOR_AGE_BUCKET_SECONDS", 86400),
            memory_message_ttl_days=_env_float("MEMORY_MESSAGE_TTL_DAYS", 90.0),
            memory_session_ttl_days=_env_float("MEMORY_SESSION_TTL_DAYS", 180.0),
            memory_session_message_cap=_env_int("MEMORY_SESSION_MESSAGE_CAP", 2000),
            memory_confidence_decay_after_days=_env_float("MEMORY_CONFIDENCE_DECAY_AFTER_DAYS", 30.0),
            memory_confidence_decay_step=_env_float("MEMORY_CONFIDENCE_DECAY_STEP", 0.05),
            memory_confidence_decay_floor=_env_float("MEMORY_CONFIDENCE_DECAY_FLOOR", 0.1),
            summary_window_messages=_env_int("SUMMARY_WINDOW_MESSAGES", 24),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        if not self.provider_order:
            raise ValueError("PROVIDER_ORDER must name at least one provider")
        for provider_id in self.provider_order:
            if provider_id not in KNOWN_PROVIDERS:
                raise ValueError(
                    f"PROVIDER_ORDER contains unknown provider '{provider_id}' "
                    f"(expected one of: {', '.join(KNOWN_PROVIDERS)})"
                )
            self.providers[provider_id].validate()

        if self.memory_backend not in MEMORY_BACKENDS:
            raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")
        if self.memory_backend == "postgres" and not self.memory_postgres_dsn:
            raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

        if self.context_token_budget < 64:
            raise ValueError("CONTEXT_TOKEN_BUDGET must be >= 64")
        if self.recent_window_messages < 1:
            raise ValueError("RECENT_WINDOW_MESSAGES must be >= 1")
        if self.semantic_top_k < 0:
            raise ValueError("SEMANTIC_TOP_K must be >= 0 (0 disables semantic recall)")
        if self.semantic_min_similarity < 0.0 or self.semantic_min_similarity > 1.0:
            raise ValueError("SEMANTIC_MIN_SIMILARITY must be in [0, 1]")
        if self.semantic_timeout_seconds <= 0:
            raise ValueError("SEMANTIC_TIMEOUT_SECONDS must be > 0")
        if self.low_confidence_threshold < 0.0 or self.low_confidence_threshold > 1.0:
            raise ValueError("MEMORY_LOW_CONFIDENCE_THRESHOLD must be in [0, 1]")
        if self.recall_reinforcement < 0.0 or self.recall_reinforcement > 1.0:
            raise ValueError("MEMORY_RECALL_REINFORCEMENT must be in [0, 1]")
        if self.token_counter not in {"estimate", "tiktoken"}:
            raise ValueError("TOKEN_COUNTER must be 'estimate' or 'tiktoken'")

        if self.semantic_index_enabled:
            if not self.qdrant_url:
                raise ValueError("QDRANT_URL cannot be empty when SEMANTIC_INDEX_ENABLED=1")
            if self.embedding_backend not in {"ollama", "openai"}:
                raise ValueError("EMBEDDING_BACKEND must be 'ollama' or 'openai'")
            if self.embedding_backend == "openai" and not self.embedding_api_key:
                raise ValueError("EMBEDDING_API_KEY is required when EMBEDDING_BACKEND=openai")
            if self.embedding_dimensions < 0:
                raise ValueError("EMBEDDING_DIMENSIONS must be >= 0 (0 takes the first vector's size)")
            if self.embedding_queue_size < 1:
                raise ValueError("EMBEDDING_QUEUE_SIZE must be >= 1")

        if self.janitor_sweep_interval_seconds < 10:
            raise ValueError("JANITOR_SWEEP_INTERVAL_SECONDS must be >= 10")
        if self.janitor_age_bucket_seconds < 1:
            raise ValueError("JANITOR_AGE_BUCKET_SECONDS must be >= 1")
        if self.memory_message_ttl_days < 0:
            raise ValueError("MEMORY_MESSAGE_TTL_DAYS must be >= 0 (0 disables message expiry)")
        if self.memory_session_ttl_days < 0:
            raise ValueError("MEMORY_SESSION_TTL_DAYS must be >= 0 (0 disables session expiry)")
        if (
            self.memory_message_ttl_days > 0
            and self.memory_session_ttl_days > 0
            and self.memory_session_ttl_days < self.memory_message_ttl_days
        ):
            raise ValueError("MEMORY_SESSION_TTL_DAYS must be >= MEMORY_MESSAGE_TTL_DAYS")
        if self.memory_session_message_cap < 0:
            raise ValueError("MEMORY_SESSION_MESSAGE_CAP must be >= 0 (0 disables the cap)")
        if self.memory_session_message_cap and self.memory_session_message_cap < self.recent_window_messages:
            raise ValueError("MEMORY_SESSION_MESSAGE_CAP must be 0 or >= RECENT_WINDOW_MESSAGES")
        if self.memory_confidence_decay_step < 0.0 or self.memory_confidence_decay_step > 1.0:
            raise ValueError("MEMORY_CONFIDENCE_DECAY_STEP must be in [0, 1]")
        if self.memory_confidence_decay_floor < 0.0 or self.memory_confidence_decay_floor > 1.0:
            raise ValueError("MEMORY_CONFIDENCE_DECAY_FLOOR must be in [0, 1]")
        if self.summary_window_messages < 2:
            raise ValueError("SUMMARY_WINDOW_MESSAGES must be >= 2")
